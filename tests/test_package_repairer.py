"""
Tests for package consistency repairs.
"""

import unittest

from _package_builder import (
    R_NS, SS_NS, VBA_REL, content_types_xml, minimal_parts, relationships_xml, workbook_xml, zip_parts,
)
from office_package import OfficePackage
from ooxml_parts import content_type_defaults, content_type_overrides, parse_xml, relationships
from package_repairer import PackageRepairer, repair_package

CTRL_PROP_REL = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/ctrlProp"


def _package(parts):
    return OfficePackage.from_bytes(zip_parts(parts))


def _content_types(package):
    return parse_xml(package.read("[Content_Types].xml"))


def _override_names(package):
    return [o.get("PartName") for o in content_type_overrides(_content_types(package))]


def _sheets(package):
    root = parse_xml(package.read("xl/workbook.xml"))
    return [(s.get("name"), s.get("sheetId"), s.get(f"{{{R_NS}}}id")) for s in root.iter(f"{{{SS_NS}}}sheet")]


class TestContentTypes(unittest.TestCase):
    def test_missing_vba_override_added_once(self):
        package = _package(minimal_parts(vba_override=False))
        report = repair_package(package)

        self.assertEqual(_override_names(package).count("/xl/vbaProject.bin"), 1)
        self.assertTrue(any("missing override for /xl/vbaProject.bin" in i.issue_kind for i in report.issues))

    def test_duplicate_and_stale_overrides_removed(self):
        parts = minimal_parts()
        parts["[Content_Types].xml"] = parts["[Content_Types].xml"].replace(
            b"</Types>",
            b'<Override PartName="/xl/vbaProject.bin" ContentType="application/vnd.ms-office.vbaProject"/>'
            b'<Override PartName="/xl/gone.xml" ContentType="application/xml"/></Types>',
        )
        package = _package(parts)
        repair_package(package)

        names = _override_names(package)
        self.assertEqual(names.count("/xl/vbaProject.bin"), 1)
        self.assertNotIn("/xl/gone.xml", names)

    def test_missing_default_declared(self):
        parts = minimal_parts()
        parts["xl/media/image1.png"] = b"\x89PNG\r\n\x1a\n"
        package = _package(parts)
        repair_package(package)

        defaults = content_type_defaults(_content_types(package))
        self.assertEqual(defaults["png"].get("ContentType"), "image/png")
        # Defaults stay ahead of Overrides
        tags = [el.tag.split("}")[1] for el in _content_types(package)]
        self.assertEqual(tags.index("Override"), tags.count("Default"))

    def test_workbook_override_follows_vba_presence(self):
        parts = minimal_parts()
        parts["[Content_Types].xml"] = content_types_xml([])
        package = _package(parts)
        repair_package(package)

        overrides = {o.get("PartName"): o.get("ContentType") for o in content_type_overrides(_content_types(package))}
        self.assertEqual(overrides["/xl/workbook.xml"], "application/vnd.ms-excel.sheet.macroEnabled.main+xml")
        self.assertIn("/xl/worksheets/sheet1.xml", overrides)


class TestRelationships(unittest.TestCase):
    def test_duplicate_ids_renumbered(self):
        parts = minimal_parts(sheet_names=("A", "B"))
        parts["xl/_rels/workbook.xml.rels"] = relationships_xml([
            ("rId1", "worksheet", "worksheets/sheet1.xml"),
            ("rId1", "worksheet", "worksheets/sheet2.xml"),
            ("rId3", VBA_REL, "vbaProject.bin"),
        ])
        package = _package(parts)
        repair_package(package)

        rels = relationships(parse_xml(package.read("xl/_rels/workbook.xml.rels")))
        ids = [r.get("Id") for r in rels]
        self.assertEqual(ids, ["rId1", "rId101", "rId3"])
        # the second sheet now points at the renumbered relationship
        self.assertEqual(_sheets(package), [("A", "1", "rId1"), ("B", "2", "rId101")])

    def test_missing_vba_relationship_added(self):
        parts = minimal_parts()
        parts["xl/_rels/workbook.xml.rels"] = relationships_xml([("rId1", "worksheet", "worksheets/sheet1.xml")])
        package = _package(parts)
        repair_package(package)

        rels = relationships(parse_xml(package.read("xl/_rels/workbook.xml.rels")))
        vba = [r for r in rels if r.get("Type") == VBA_REL]
        self.assertEqual(len(vba), 1)
        self.assertEqual(vba[0].get("Target"), "vbaProject.bin")
        self.assertEqual(vba[0].get("Id"), "rId2")

    def test_missing_workbook_rels_created(self):
        parts = minimal_parts()
        del parts["xl/_rels/workbook.xml.rels"]
        package = _package(parts)
        report = repair_package(package)

        self.assertTrue(package.has("xl/_rels/workbook.xml.rels"))
        self.assertTrue(any(i.issue_kind == "missing relationships part" for i in report.issues))
        targets = {r.get("Target") for r in relationships(parse_xml(package.read("xl/_rels/workbook.xml.rels")))}
        self.assertEqual(targets, {"vbaProject.bin", "worksheets/sheet1.xml"})


class TestSheetList(unittest.TestCase):
    def test_duplicate_sheet_ids_and_names(self):
        parts = minimal_parts(sheet_names=("A", "B", "C"))
        parts["xl/workbook.xml"] = workbook_xml([("A", "1", "rId1"), ("a", "1", "rId2"), ("C", "3", "rId3")])
        package = _package(parts)
        repair_package(package)

        sheets = _sheets(package)
        self.assertEqual(len({s[1] for s in sheets}), 3)
        self.assertEqual(len({s[0].lower() for s in sheets}), 3)
        self.assertEqual(sheets[1], ("Sheet2", "4", "rId2"))

    def test_sheet_ids_compared_numerically(self):
        parts = minimal_parts(sheet_names=("A", "B"))
        parts["xl/workbook.xml"] = workbook_xml([("A", "1", "rId1"), ("B", "01", "rId2")])
        package = _package(parts)
        report = repair_package(package)

        self.assertEqual(_sheets(package), [("A", "1", "rId1"), ("B", "2", "rId2")])
        self.assertTrue(any(i.issue_kind == "duplicate or missing sheetId '01'" for i in report.issues))

    def test_non_decimal_sheet_id_renumbered(self):
        parts = minimal_parts(sheet_names=("A",))
        parts["xl/workbook.xml"] = workbook_xml([("A", "²", "rId1")])
        package = _package(parts)
        report = repair_package(package)

        self.assertEqual(_sheets(package), [("A", "1", "rId1")])
        self.assertEqual(report.skipped, [])

    def test_missing_rid_takes_orphan_relationship(self):
        parts = minimal_parts(sheet_names=("A", "B"))
        parts["xl/workbook.xml"] = workbook_xml([("A", "1", "rId1"), ("B", "2", "")]).replace(
            b' r:id=""', b"")
        package = _package(parts)
        repair_package(package)
        self.assertEqual(_sheets(package)[1], ("B", "2", "rId2"))


class TestFragileParts(unittest.TestCase):
    def test_empty_and_truncated_control_parts_pruned(self):
        parts = minimal_parts()
        parts["xl/ctrlProps/ctrlProp1.xml"] = b"<a/>"
        parts["xl/ctrlProps/ctrlProp2.xml"] = b'<formControlPr objectType="Button"/>'
        parts["xl/activeX/activeX1.xml"] = b""
        parts["xl/worksheets/_rels/sheet1.xml.rels"] = relationships_xml([
            ("rId1", CTRL_PROP_REL, "../ctrlProps/ctrlProp1.xml"),
            ("rId2", CTRL_PROP_REL, "../ctrlProps/ctrlProp2.xml"),
        ])
        package = _package(parts)
        report = PackageRepairer(package).run()

        self.assertFalse(package.has("xl/ctrlProps/ctrlProp1.xml"))
        self.assertFalse(package.has("xl/activeX/activeX1.xml"))
        self.assertTrue(package.has("xl/ctrlProps/ctrlProp2.xml"))
        rels = relationships(parse_xml(package.read("xl/worksheets/_rels/sheet1.xml.rels")))
        self.assertEqual([r.get("Id") for r in rels], ["rId2"])
        kinds = {i.part_path: i.issue_kind for i in report.issues}
        self.assertEqual(kinds["xl/activeX/activeX1.xml"], "empty part")
        self.assertEqual(kinds["xl/ctrlProps/ctrlProp1.xml"], "truncated part (4 bytes)")


class TestIdempotence(unittest.TestCase):
    def test_second_run_finds_nothing(self):
        parts = minimal_parts(sheet_names=("A", "B"), vba_override=False)
        parts["xl/workbook.xml"] = workbook_xml([("A", "1", "rId1"), ("B", "1", "rId1")])
        parts["xl/activeX/activeX1.xml"] = b""
        package = _package(parts)

        first = repair_package(package)
        snapshot = {path: package.read(path) for path in package.paths()}
        second = repair_package(package)

        self.assertTrue(first.repaired)
        self.assertEqual(second.issues, [])
        self.assertEqual({path: package.read(path) for path in package.paths()}, snapshot)

    def test_malformed_part_is_reported_not_fatal(self):
        parts = minimal_parts()
        parts["[Content_Types].xml"] = b"<Types"
        package = _package(parts)
        report = repair_package(package)

        self.assertEqual(package.read("[Content_Types].xml"), b"<Types")
        self.assertTrue(any(r.path == "[Content_Types].xml" for r in report.skipped))


if __name__ == "__main__":
    unittest.main()
