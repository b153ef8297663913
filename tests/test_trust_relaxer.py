"""
Tests for protection removal and trust relaxation on package XML parts.
"""

import unittest

from _package_builder import SS_NS, minimal_parts, relationships_xml, zip_parts
from office_package import OfficePackage
from ooxml_parts import (
    CT_CUSTOM_PROPERTIES, CT_SECURITY_SETTINGS, REL_CUSTOM_PROPERTIES, content_type_overrides,
    is_well_formed, parse_xml, relationships,
)
from process_log import ProcessLog
from trust_relaxer import (
    CUSTOM_PROPS_PART, SECURITY_SETTINGS_PART, VBA_PROJECT_RELS, RelaxOptions, TrustRelaxer,
    relax_package,
)

SIGNATURE_REL = "http://schemas.microsoft.com/office/2006/relationships/vbaProjectSignature"
SIGNATURE_CT = "application/vnd.ms-office.vbaProjectSignature"


def _package(parts):
    return OfficePackage.from_bytes(zip_parts(parts))


def _overrides(package):
    root = parse_xml(package.read("[Content_Types].xml"))
    return {o.get("PartName"): o.get("ContentType") for o in content_type_overrides(root)}


class TestSheetProtection(unittest.TestCase):
    def test_sheet_protection_removed(self):
        package = _package(minimal_parts(sheet_names=("Data", "Summary"), protected_sheets=True))
        report = TrustRelaxer(package).run()

        for path in ("xl/worksheets/sheet1.xml", "xl/worksheets/sheet2.xml"):
            data = package.read(path)
            self.assertNotIn(b"sheetProtection", data)
            self.assertIn(b"sheetData", data)
            self.assertTrue(is_well_formed(data))
        self.assertEqual(len([r for r in report.changed if r.operation == "sheet protection removal"]), 2)

    def test_malformed_sheet_is_skipped_others_handled(self):
        parts = minimal_parts(sheet_names=("Data", "Summary"), protected_sheets=True)
        parts["xl/worksheets/sheet2.xml"] = b"<worksheet><sheetData>"
        package = _package(parts)
        log = ProcessLog()

        report = TrustRelaxer(package, log=log).run()

        self.assertNotIn(b"sheetProtection", package.read("xl/worksheets/sheet1.xml"))
        self.assertEqual(package.read("xl/worksheets/sheet2.xml"), b"<worksheet><sheetData>")
        skipped = [r for r in report.skipped if r.path == "xl/worksheets/sheet2.xml"]
        self.assertEqual(len(skipped), 1)
        self.assertTrue(skipped[0].skipped_reason.startswith("XML parse error"))
        self.assertTrue(log.messages("warning"))

    def test_option_disabled(self):
        package = _package(minimal_parts(protected_sheets=True))
        relax_package(package, RelaxOptions(remove_sheet_protection=False))
        self.assertIn(b"sheetProtection", package.read("xl/worksheets/sheet1.xml"))


class TestWorkbookSettings(unittest.TestCase):
    def setUp(self):
        self.package = _package(minimal_parts(
            workbook_extra='<workbookProtection workbookPassword="CC3D" lockStructure="1"/>'))

    def _workbook(self):
        return parse_xml(self.package.read("xl/workbook.xml"))

    def test_workbook_protection_removed(self):
        TrustRelaxer(self.package).run()
        self.assertIsNone(self._workbook().find(f"{{{SS_NS}}}workbookProtection"))

    def test_external_links_and_file_version(self):
        TrustRelaxer(self.package).run()
        root = self._workbook()

        workbook_pr = root.find(f"{{{SS_NS}}}workbookPr")
        self.assertEqual(workbook_pr.get("saveExternalLinkValues"), "1")
        self.assertEqual(workbook_pr.get("updateLinks"), "1")

        children = [el.tag.split("}")[1] for el in root]
        self.assertEqual(children[:2], ["fileVersion", "workbookPr"])
        self.assertEqual(root[0].get("appName"), "xl")

    def test_existing_workbook_pr_is_patched(self):
        package = _package(minimal_parts(workbook_extra='<workbookPr codeName="ThisWorkbook" updateLinks="never"/>'))
        relax_package(package, RelaxOptions(update_links_value="always"))
        root = parse_xml(package.read("xl/workbook.xml"))
        workbook_prs = root.findall(f"{{{SS_NS}}}workbookPr")
        self.assertEqual(len(workbook_prs), 1)
        self.assertEqual(workbook_prs[0].get("codeName"), "ThisWorkbook")
        self.assertEqual(workbook_prs[0].get("updateLinks"), "always")


class TestMarkTrusted(unittest.TestCase):
    def test_custom_properties_declared_and_linked(self):
        package = _package(minimal_parts())
        TrustRelaxer(package).run()

        custom = package.read(CUSTOM_PROPS_PART)
        self.assertIn(b'name="_TrustedDocumentSettings"', custom)
        self.assertIn(b'name="_MarkAsTrusted"', custom)
        self.assertEqual(_overrides(package)["/docProps/custom.xml"], CT_CUSTOM_PROPERTIES)

        rels = relationships(parse_xml(package.read("_rels/.rels")))
        custom_rels = [r for r in rels if r.get("Type") == REL_CUSTOM_PROPERTIES]
        self.assertEqual(len(custom_rels), 1)
        self.assertEqual(custom_rels[0].get("Target"), "docProps/custom.xml")
        self.assertEqual(len({r.get("Id") for r in rels}), len(rels))

    def test_trust_settings_part_is_opt_in(self):
        package = _package(minimal_parts())
        TrustRelaxer(package).run()
        self.assertFalse(package.has(SECURITY_SETTINGS_PART))

        relax_package(package, RelaxOptions(add_trust_settings_part=True))
        self.assertTrue(package.has(SECURITY_SETTINGS_PART))
        self.assertEqual(_overrides(package)["/xl/excelSecuritySettings.xml"], CT_SECURITY_SETTINGS)
        self.assertIn(b"excelSecuritySettings.xml", package.read("xl/_rels/workbook.xml.rels"))


class TestSignatureRemoval(unittest.TestCase):
    def test_signature_parts_relationships_and_overrides_removed(self):
        parts = minimal_parts()
        parts["xl/vbaProjectSignature.bin"] = b"\x30\x82" + b"\x00" * 64
        parts[VBA_PROJECT_RELS] = relationships_xml([("rId1", SIGNATURE_REL, "vbaProjectSignature.bin")])
        parts["[Content_Types].xml"] = parts["[Content_Types].xml"].replace(
            b"</Types>",
            f'<Override PartName="/xl/vbaProjectSignature.bin" ContentType="{SIGNATURE_CT}"/></Types>'.encode(),
        )
        package = _package(parts)

        TrustRelaxer(package).run()

        self.assertFalse(package.has("xl/vbaProjectSignature.bin"))
        self.assertFalse(package.has(VBA_PROJECT_RELS))
        self.assertNotIn("/xl/vbaProjectSignature.bin", _overrides(package))
        self.assertIn("/xl/vbaProject.bin", _overrides(package))
        self.assertIn("xl/vbaProjectSignature.bin", package.removed)


class TestIdempotence(unittest.TestCase):
    def test_second_run_changes_nothing(self):
        package = _package(minimal_parts(protected_sheets=True,
                                         workbook_extra='<workbookProtection lockStructure="1"/>'))
        first = TrustRelaxer(package).run()
        snapshot = {path: package.read(path) for path in package.paths()}

        second = TrustRelaxer(package).run()

        self.assertTrue(first.changed)
        self.assertEqual(second.changed, [])
        self.assertEqual({path: package.read(path) for path in package.paths()}, snapshot)

    def test_from_config(self):
        class Settings:
            REMOVE_SHEET_PROTECTION = False
            UPDATE_LINKS_VALUE = "always"

        options = RelaxOptions.from_config(Settings)
        self.assertFalse(options.remove_sheet_protection)
        self.assertEqual(options.update_links_value, "always")
        self.assertTrue(options.mark_document_trusted)


if __name__ == "__main__":
    unittest.main()
