"""
Package Repairer Module
Re-establishes the cross-references an Office package must hold after its
parts have been edited: content types, relationship ids, the workbook's
relationships and its sheet list.

Each detected problem is fixed in place and reported as an IntegrityIssue.
Parts are only written when something changed, so a second run over a
repaired package reports nothing and writes nothing.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from lxml import etree

from ooxml_parts import (
    CONTENT_TYPES_PART, CT_VBA_PROJECT, CT_WORKBOOK, CT_WORKBOOK_BINARY, CT_WORKBOOK_MACRO,
    CT_WORKSHEET, CT_WORKSHEET_BINARY, DEFAULT_CONTENT_TYPES, FALLBACK_CONTENT_TYPE,
    OFFICE_RELS_NS, REL_SHARED_STRINGS, REL_STYLES, REL_VBA_PROJECT, REL_WORKSHEET,
    SPREADSHEET_NS, add_default, add_override, add_relationship, content_type_defaults,
    content_type_overrides, empty_relationships, extension_of, namespace_of,
    next_relationship_id, parse_xml, part_name, qn, relationship_targets, relationships,
    relative_target, rels_path_for, remove_element, serialize_xml, source_of_rels,
)
from office_package import WORKBOOK_BIN, WORKBOOK_XML, OfficePackage, PartResult, transform_part
from process_log import ProcessLog

logger = logging.getLogger(__name__)

FRAGILE_DIRECTORIES = ("xl/ctrlProps/", "xl/activeX/")
MIN_CTRL_PROPS_SIZE = 10
DUPLICATE_ID_OFFSET = 100

R_ID = qn(OFFICE_RELS_NS, "id")


@dataclass
class IntegrityIssue:
    """One inconsistency that was found and corrected."""
    part_path: str
    issue_kind: str
    remediation: str

    def __str__(self) -> str:
        return f"{self.part_path}: {self.issue_kind} ({self.remediation})"


@dataclass
class RepairReport:
    issues: List[IntegrityIssue] = field(default_factory=list)
    skipped: List[PartResult] = field(default_factory=list)

    @property
    def repaired(self) -> bool:
        return bool(self.issues)


IssueMutator = Callable[[etree._Element, List[IntegrityIssue]], bool]


class PackageRepairer:
    """Run the consistency repairs over a package, in a fixed order."""

    def __init__(self, package: OfficePackage, log: Optional[ProcessLog] = None):
        self.package = package
        self.log = log or ProcessLog()
        self.report = RepairReport()

    # -- bookkeeping -----------------------------------------------------

    def _issue(self, issue: IntegrityIssue) -> None:
        self.report.issues.append(issue)
        self.log.info(f"Repaired {issue}.")

    def _apply(self, path: str, operation: str, mutate: IssueMutator) -> PartResult:
        pending: List[IntegrityIssue] = []
        result = transform_part(self.package, path, operation, lambda root: mutate(root, pending))
        if result.changed:
            for issue in pending:
                self._issue(issue)
        elif result.skipped:
            self.report.skipped.append(result)
            self.log.warning(f"Could not check {operation} in {path}: {result.skipped_reason}")
        return result

    # -- entry point -----------------------------------------------------

    def run(self) -> RepairReport:
        self.prune_fragile_parts()
        self.deduplicate_relationship_ids()
        self.ensure_workbook_relationships()
        self.repair_sheet_list()
        self.repair_content_types()

        if self.report.issues:
            self.log.success(f"Package integrity repaired ({len(self.report.issues)} issue(s)).")
        else:
            self.log.info("Package integrity check found nothing to repair.")
        return self.report

    # -- 1. fragile control parts ---------------------------------------

    def prune_fragile_parts(self) -> Set[str]:
        """Remove ctrlProps/activeX entries that are empty, unreadable or truncated."""
        package = self.package
        pruned: Set[str] = set()

        candidates = sorted(set(package.paths()) | package.unreadable)
        for path in candidates:
            if not path.startswith(FRAGILE_DIRECTORIES) or path.endswith(".rels"):
                continue
            if path in package.unreadable:
                reason = "unreadable part"
            else:
                size = len(package.read(path))
                if size == 0:
                    reason = "empty part"
                elif path.startswith("xl/ctrlProps/") and size < MIN_CTRL_PROPS_SIZE:
                    reason = f"truncated part ({size} bytes)"
                else:
                    continue
            package.remove(path)
            pruned.add(path)
            self._issue(IntegrityIssue(path, reason, "removed"))

            own_rels = rels_path_for(path)
            if package.remove(own_rels):
                self._issue(IntegrityIssue(own_rels, "relationships of removed part", "removed"))

        if pruned:
            for rels_path in [p for p in package.paths() if p.endswith(".rels")]:
                self._apply(rels_path, "relationships to removed parts",
                            _drop_relationships_to(source_of_rels(rels_path), pruned))
        return pruned

    # -- 2. relationship ids --------------------------------------------

    def deduplicate_relationship_ids(self) -> None:
        for rels_path in sorted(p for p in self.package.paths() if p.endswith(".rels")):
            self._apply(rels_path, "relationship ids", _renumber_duplicate_ids(rels_path))

    # -- 3. workbook relationships --------------------------------------

    def ensure_workbook_relationships(self) -> None:
        package = self.package
        workbook = package.workbook_path
        if workbook is None:
            return

        wanted: List[tuple] = []
        vba_part = package.find_vba_project()
        if vba_part:
            wanted.append((REL_VBA_PROJECT, vba_part))
        for rel_type, candidates in ((REL_STYLES, ("xl/styles.xml", "xl/styles.bin")),
                                     (REL_SHARED_STRINGS, ("xl/sharedStrings.xml", "xl/sharedStrings.bin"))):
            for candidate in candidates:
                if package.has(candidate):
                    wanted.append((rel_type, candidate))
                    break
        for sheet in package.worksheet_paths():
            wanted.append((REL_WORKSHEET, sheet))

        rels_path = rels_path_for(workbook)
        if not package.has(rels_path):
            package.write(rels_path, serialize_xml(empty_relationships()))
            self._issue(IntegrityIssue(rels_path, "missing relationships part", "created"))

        def mutate(root: etree._Element, issues: List[IntegrityIssue]) -> bool:
            present = set(relationship_targets(root, workbook).values())
            added = False
            for rel_type, target in wanted:
                if target in present:
                    continue
                rel_id = add_relationship(root, rel_type, relative_target(workbook, target))
                present.add(target)
                issues.append(IntegrityIssue(rels_path, f"missing relationship to {target}", f"added {rel_id}"))
                added = True
            return added

        self._apply(rels_path, "workbook relationships", mutate)

    # -- 4. sheet list ---------------------------------------------------

    def repair_sheet_list(self) -> None:
        package = self.package
        if not package.has(WORKBOOK_XML):
            if package.has(WORKBOOK_BIN):
                self.log.info("Binary workbook: sheet list check does not apply.")
            return

        rels_path = rels_path_for(WORKBOOK_XML)
        sheet_rels: Dict[str, str] = {}
        all_rel_ids: Set[str] = set()
        if package.has(rels_path):
            try:
                rels_root = parse_xml(package.read(rels_path))
            except etree.XMLSyntaxError as exc:
                self.log.warning(f"Could not parse {rels_path}: {exc}")
            else:
                for rel in relationships(rels_root):
                    all_rel_ids.add(rel.get("Id", ""))
                    if rel.get("Type") == REL_WORKSHEET:
                        sheet_rels[rel.get("Id", "")] = rel.get("Target", "")

        self._apply(WORKBOOK_XML, "sheet list", _repair_sheets(sheet_rels, all_rel_ids, self.log))

    # -- 5. content types -----------------------------------------------

    def repair_content_types(self) -> None:
        package = self.package
        present = {part_name(p).lower(): p for p in package.paths()}
        extensions = sorted({extension_of(p) for p in package.paths()} - {""})

        overrides_wanted: List[tuple] = []
        workbook = package.workbook_path
        vba_part = package.find_vba_project()
        if workbook == WORKBOOK_XML:
            overrides_wanted.append((workbook, CT_WORKBOOK_MACRO if vba_part else CT_WORKBOOK))
        elif workbook == WORKBOOK_BIN:
            overrides_wanted.append((workbook, CT_WORKBOOK_BINARY))
        for sheet in package.worksheet_paths():
            overrides_wanted.append((sheet, CT_WORKSHEET_BINARY if sheet.endswith(".bin") else CT_WORKSHEET))
        if vba_part:
            overrides_wanted.append((vba_part, CT_VBA_PROJECT))

        def mutate(root: etree._Element, issues: List[IntegrityIssue]) -> bool:
            changed = False

            defaults = content_type_defaults(root)
            for ext in extensions:
                if ext in defaults:
                    continue
                content_type = DEFAULT_CONTENT_TYPES.get(ext, FALLBACK_CONTENT_TYPE)
                add_default(root, ext, content_type)
                issues.append(IntegrityIssue(CONTENT_TYPES_PART, f"missing default for .{ext}",
                                             f"declared {content_type}"))
                changed = True

            seen: Set[str] = set()
            for override in content_type_overrides(root):
                name = (override.get("PartName") or "").lower()
                if name in seen:
                    remove_element(override)
                    issues.append(IntegrityIssue(CONTENT_TYPES_PART, f"duplicate override {name}", "removed"))
                    changed = True
                elif name not in present:
                    remove_element(override)
                    issues.append(IntegrityIssue(CONTENT_TYPES_PART, f"override for missing part {name}",
                                                 "removed"))
                    changed = True
                else:
                    seen.add(name)

            for path, content_type in overrides_wanted:
                if part_name(path).lower() in seen:
                    continue
                add_override(root, path, content_type)
                seen.add(part_name(path).lower())
                issues.append(IntegrityIssue(CONTENT_TYPES_PART, f"missing override for {part_name(path)}",
                                             f"declared {content_type}"))
                changed = True

            return changed

        self._apply(CONTENT_TYPES_PART, "content types", mutate)


# ---------------------------------------------------------------------------
# Mutators
# ---------------------------------------------------------------------------

def _drop_relationships_to(source_path: str, targets: Set[str]) -> IssueMutator:
    def mutate(root: etree._Element, issues: List[IntegrityIssue]) -> bool:
        resolved = relationship_targets(root, source_path)
        doomed = [rel for rel in relationships(root) if resolved.get(rel.get("Id", "")) in targets]
        for rel in doomed:
            issues.append(IntegrityIssue(source_path or "/", f"relationship {rel.get('Id')} to removed part",
                                         "removed"))
            remove_element(rel)
        return bool(doomed)
    return mutate


def _renumber_duplicate_ids(rels_path: str) -> IssueMutator:
    """Give every duplicate (or missing) Id a fresh ``rId{index+100}``."""
    def mutate(root: etree._Element, issues: List[IntegrityIssue]) -> bool:
        rels = relationships(root)
        taken = {rel.get("Id") for rel in rels if rel.get("Id")}
        seen: Set[str] = set()
        changed = False
        for index, rel in enumerate(rels):
            rel_id = rel.get("Id")
            if rel_id and rel_id not in seen:
                seen.add(rel_id)
                continue
            new_id = next_relationship_id(taken | seen, start=index + DUPLICATE_ID_OFFSET)
            rel.set("Id", new_id)
            seen.add(new_id)
            taken.add(new_id)
            issues.append(IntegrityIssue(rels_path, f"duplicate relationship id {rel_id or '(missing)'}",
                                         f"renumbered to {new_id}"))
            changed = True
        return changed
    return mutate


def _repair_sheets(sheet_rels: Dict[str, str], all_rel_ids: Set[str], log: ProcessLog) -> IssueMutator:
    """
    Make name, sheetId and r:id unique for every ``<sheet>``.

    A sheet whose r:id is missing, duplicated or dangling takes a worksheet
    relationship no other sheet references; without one, a missing r:id
    gets the next free ``rId{n}``.
    """
    def mutate(root: etree._Element, issues: List[IntegrityIssue]) -> bool:
        ns = namespace_of(root) or SPREADSHEET_NS
        sheets_el = root.find(qn(ns, "sheets"))
        if sheets_el is None:
            return False
        sheets = list(sheets_el.iter(qn(ns, "sheet")))

        numeric_ids = [int(s.get("sheetId")) for s in sheets if (s.get("sheetId") or "").isdecimal()]
        next_sheet_id = max(numeric_ids + [0]) + 1
        referenced = {s.get(R_ID) for s in sheets if s.get(R_ID) in sheet_rels}
        orphans = [rid for rid in sheet_rels if rid not in referenced]

        used_names: Set[str] = set()
        used_ids: Set[int] = set()
        used_rids: Set[str] = set()
        changed = False

        for index, sheet in enumerate(sheets):
            name = sheet.get("name")
            if not name or name.lower() in used_names:
                n = index + 1
                while f"sheet{n}" in used_names or any(
                        (s.get("name") or "").lower() == f"sheet{n}" for s in sheets):
                    n += 1
                new_name = f"Sheet{n}"
                sheet.set("name", new_name)
                issues.append(IntegrityIssue(WORKBOOK_XML, f"duplicate or missing sheet name {name!r}",
                                             f"renamed to {new_name}"))
                changed = True
            used_names.add(sheet.get("name").lower())

            sheet_id = sheet.get("sheetId")
            # sheetId is an unsignedInt, so "1" and "01" clash
            if not (sheet_id or "").isdecimal() or int(sheet_id) in used_ids:
                sheet.set("sheetId", str(next_sheet_id))
                issues.append(IntegrityIssue(WORKBOOK_XML, f"duplicate or missing sheetId {sheet_id!r}",
                                             f"renumbered to {next_sheet_id}"))
                next_sheet_id += 1
                changed = True
            used_ids.add(int(sheet.get("sheetId")))

            rid = sheet.get(R_ID)
            if rid and rid in sheet_rels and rid not in used_rids:
                used_rids.add(rid)
                continue
            if orphans:
                new_rid = orphans.pop(0)
            elif not rid:
                new_rid = next_relationship_id(all_rel_ids | used_rids)
                all_rel_ids.add(new_rid)
            else:
                log.warning(f"Sheet {sheet.get('name')!r} references {rid} but no unused worksheet "
                            f"relationship is available.")
                used_rids.add(rid)
                continue
            sheet.set(R_ID, new_rid)
            used_rids.add(new_rid)
            issues.append(IntegrityIssue(WORKBOOK_XML, f"duplicate, missing or dangling r:id {rid!r}",
                                         f"pointed at {new_rid}"))
            changed = True

        return changed
    return mutate


def repair_package(package: OfficePackage, log: Optional[ProcessLog] = None) -> RepairReport:
    """
    Convenience function to run every consistency repair on *package*.

    Returns:
        RepairReport with one IntegrityIssue per correction
    """
    return PackageRepairer(package, log).run()
