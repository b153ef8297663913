"""
Trust Relaxer Module
Removes sheet/workbook protection and broadens macro and link trust by
editing the XML parts of a package. The VBA binary is never touched here.

Every operation works on one part at a time: parse, mutate, re-check that
the result is well-formed, write back. A part that fails any of those
steps is skipped with a reason and the remaining parts are still handled.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from lxml import etree

from ooxml_parts import (
    CONTENT_TYPES_PART, CT_CUSTOM_PROPERTIES, CT_SECURITY_SETTINGS, CUSTOM_PROPS_NS,
    REL_CUSTOM_PROPERTIES, REL_SECURITY_SETTINGS, ROOT_RELS_PART, SPREADSHEET_NS, VT_NS,
    add_override, add_relationship, content_type_overrides, empty_relationships,
    local_name, namespace_of, new_child, parse_xml, part_name, qn,
    relationship_targets, relationships, relative_target, rels_path_for, remove_element,
    serialize_xml, source_of_rels,
)
from office_package import WORKBOOK_XML, Mutator, OfficePackage, PartResult, transform_part
from process_log import ProcessLog

logger = logging.getLogger(__name__)

CUSTOM_PROPS_PART = "docProps/custom.xml"
SECURITY_SETTINGS_PART = "xl/excelSecuritySettings.xml"
VBA_PROJECT_RELS = "xl/_rels/vbaProject.bin.rels"
PROPERTY_FMTID = "{D5CDD505-2E9C-101B-9397-08002B2CF9AE}"

TRUST_PROPERTIES = (
    ("_TrustedDocumentSettings", "lpwstr", "Trusted"),
    ("_MarkAsTrusted", "bool", "true"),
)

FILE_VERSION_ATTRIBUTES = {
    "appName": "xl",
    "lastEdited": "7",
    "lowestEdited": "7",
    "rupBuild": "22228",
}

SECURITY_SETTINGS_XML = (
    b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
    b'<excelSecuritySettings xmlns="http://schemas.microsoft.com/office/2006/01/customui">'
    b'<security><trustRecords><trustRecord trustMode="trustAll"/></trustRecords></security>'
    b'</excelSecuritySettings>'
)

_SIGNATURE_PART_RE = re.compile(r"(^|/)vbaProjectSignature[^/]*\.bin$", re.IGNORECASE)

# workbook.xml children that must precede workbookPr
_BEFORE_WORKBOOK_PR = ("fileVersion", "fileSharing")


@dataclass
class RelaxOptions:
    """Which relaxations to apply; each one is independent."""
    remove_sheet_protection: bool = True
    remove_workbook_protection: bool = True
    enable_external_links: bool = True
    ensure_file_version: bool = True
    mark_document_trusted: bool = True
    remove_vba_signature: bool = True
    add_trust_settings_part: bool = False
    # openpyxl only loads "always", "never" or "userSet"; Excel accepts "1"
    update_links_value: str = "1"

    @classmethod
    def from_config(cls, config) -> "RelaxOptions":
        defaults = cls()
        return cls(
            remove_sheet_protection=getattr(config, "REMOVE_SHEET_PROTECTION", defaults.remove_sheet_protection),
            remove_workbook_protection=getattr(config, "REMOVE_WORKBOOK_PROTECTION",
                                               defaults.remove_workbook_protection),
            enable_external_links=getattr(config, "ENABLE_EXTERNAL_LINKS", defaults.enable_external_links),
            ensure_file_version=getattr(config, "ENSURE_FILE_VERSION", defaults.ensure_file_version),
            mark_document_trusted=getattr(config, "MARK_DOCUMENT_TRUSTED", defaults.mark_document_trusted),
            remove_vba_signature=getattr(config, "REMOVE_VBA_SIGNATURE", defaults.remove_vba_signature),
            add_trust_settings_part=getattr(config, "ADD_TRUST_SETTINGS_PART", defaults.add_trust_settings_part),
            update_links_value=getattr(config, "UPDATE_LINKS_VALUE", defaults.update_links_value),
        )


@dataclass
class RelaxReport:
    results: List[PartResult] = field(default_factory=list)

    @property
    def changed(self) -> List[PartResult]:
        return [r for r in self.results if r.changed]

    @property
    def skipped(self) -> List[PartResult]:
        return [r for r in self.results if r.skipped]


# ---------------------------------------------------------------------------
# Mutators
# ---------------------------------------------------------------------------

def _remove_children(root: etree._Element, *names: str) -> bool:
    ns = namespace_of(root) or SPREADSHEET_NS
    doomed = [el for name in names for el in root.iter(qn(ns, name))]
    for element in doomed:
        remove_element(element)
    return bool(doomed)


def strip_sheet_protection(root: etree._Element) -> bool:
    """Drop ``<sheetProtection>`` and ``<protectedRanges>`` from a worksheet."""
    return _remove_children(root, "sheetProtection", "protectedRanges")


def strip_workbook_protection(root: etree._Element) -> bool:
    """Drop ``<workbookProtection>`` and ``<fileSharing>`` from workbook.xml."""
    return _remove_children(root, "workbookProtection", "fileSharing")


def _child(root: etree._Element, name: str) -> Optional[etree._Element]:
    return root.find(qn(namespace_of(root) or SPREADSHEET_NS, name))


def ensure_external_links(update_links: str = "1") -> Mutator:
    """Build a mutator that adds or patches ``<workbookPr>`` for automatic link updates."""
    wanted = {"saveExternalLinkValues": "1", "updateLinks": update_links}

    def mutate(root: etree._Element) -> bool:
        workbook_pr = _child(root, "workbookPr")
        if workbook_pr is None:
            index = 0
            for i, child in enumerate(root):
                if isinstance(child.tag, str) and local_name(child) in _BEFORE_WORKBOOK_PR:
                    index = i + 1
            new_child(root, qn(namespace_of(root) or SPREADSHEET_NS, "workbookPr"), wanted, index=index)
            return True

        changed = False
        for key, value in wanted.items():
            if workbook_pr.get(key) != value:
                workbook_pr.set(key, value)
                changed = True
        return changed

    return mutate


def ensure_file_version(root: etree._Element) -> bool:
    if _child(root, "fileVersion") is not None:
        return False
    new_child(root, qn(namespace_of(root) or SPREADSHEET_NS, "fileVersion"),
              FILE_VERSION_ATTRIBUTES, index=0)
    return True


def add_trust_properties(root: etree._Element) -> bool:
    """Add the trust markers to a custom-properties part."""
    ns = namespace_of(root) or CUSTOM_PROPS_NS
    props = [el for el in root if isinstance(el.tag, str) and local_name(el) == "property"]
    existing = {el.get("name") for el in props}
    pids = [int(el.get("pid")) for el in props if (el.get("pid") or "").isdecimal()]
    next_pid = max(pids + [1]) + 1

    changed = False
    for name, vt_type, value in TRUST_PROPERTIES:
        if name in existing:
            continue
        prop = new_child(root, qn(ns, "property"),
                         {"fmtid": PROPERTY_FMTID, "pid": str(next_pid), "name": name})
        etree.SubElement(prop, qn(VT_NS, vt_type)).text = value
        next_pid += 1
        changed = True
    return changed


def _empty_custom_properties() -> bytes:
    root = etree.Element(qn(CUSTOM_PROPS_NS, "Properties"), nsmap={None: CUSTOM_PROPS_NS, "vt": VT_NS})
    return serialize_xml(root)


def _ensure_override(path: str, content_type: str) -> Mutator:
    def mutate(root: etree._Element) -> bool:
        wanted = part_name(path).lower()
        if any((o.get("PartName") or "").lower() == wanted for o in content_type_overrides(root)):
            return False
        add_override(root, path, content_type)
        return True
    return mutate


def _ensure_relationship(source_path: str, rel_type: str, target_path: str) -> Mutator:
    def mutate(root: etree._Element) -> bool:
        if any(rel.get("Type") == rel_type for rel in relationships(root)):
            return False
        add_relationship(root, rel_type, relative_target(source_path, target_path))
        return True
    return mutate


def _drop_relationships_to(source_path: str, targets: set) -> Mutator:
    def mutate(root: etree._Element) -> bool:
        resolved = relationship_targets(root, source_path)
        doomed = [rel for rel in relationships(root) if resolved.get(rel.get("Id", "")) in targets]
        for rel in doomed:
            remove_element(rel)
        return bool(doomed)
    return mutate


def _drop_overrides_for(paths: set) -> Mutator:
    names = {part_name(p).lower() for p in paths}

    def mutate(root: etree._Element) -> bool:
        doomed = [o for o in content_type_overrides(root) if (o.get("PartName") or "").lower() in names]
        for override in doomed:
            remove_element(override)
        return bool(doomed)
    return mutate


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

class TrustRelaxer:
    """Apply the enabled relaxations to a package, in a fixed order."""

    def __init__(self, package: OfficePackage, options: Optional[RelaxOptions] = None,
                 log: Optional[ProcessLog] = None):
        self.package = package
        self.options = options or RelaxOptions()
        self.log = log or ProcessLog()
        self.report = RelaxReport()

    def _record(self, result: PartResult, done: str) -> PartResult:
        self.report.results.append(result)
        if result.skipped:
            self.log.warning(f"Skipped {result.operation} in {result.path}: {result.skipped_reason}")
        elif result.changed:
            self.log.info(f"{done} in {result.path}.")
        return result

    def run(self) -> RelaxReport:
        opts = self.options
        if opts.remove_sheet_protection:
            self.remove_sheet_protection()
        if self.package.has(WORKBOOK_XML):
            if opts.remove_workbook_protection:
                self._record(transform_part(self.package, WORKBOOK_XML, "workbook protection removal",
                                            strip_workbook_protection),
                             "Removed workbook protection")
            if opts.enable_external_links:
                self._record(transform_part(self.package, WORKBOOK_XML, "external link enabling",
                                            ensure_external_links(opts.update_links_value)),
                             "Enabled automatic external link updates")
            if opts.ensure_file_version:
                self._record(transform_part(self.package, WORKBOOK_XML, "file version", ensure_file_version),
                             "Added file version information")
        elif self.package.is_binary_workbook:
            self.log.info("Binary workbook: workbook.xml relaxations do not apply.")
        if opts.mark_document_trusted:
            self.mark_document_trusted()
        if opts.add_trust_settings_part:
            self.add_trust_settings_part()
        if opts.remove_vba_signature:
            self.remove_vba_signature()

        changed = len(self.report.changed)
        if changed:
            self.log.success(f"Security relaxations applied ({changed} change(s)).")
        else:
            self.log.info("No security relaxations were needed.")
        return self.report

    def remove_sheet_protection(self) -> None:
        removed = 0
        for path in self.package.worksheet_paths():
            if not path.endswith(".xml"):
                self.log.info(f"Binary worksheet {path} left unchanged.")
                continue
            result = self._record(
                transform_part(self.package, path, "sheet protection removal", strip_sheet_protection),
                "Removed sheet protection",
            )
            removed += result.changed
        if not removed:
            self.log.info("No sheet protection found.")

    def mark_document_trusted(self) -> None:
        package = self.package
        if not package.has(CUSTOM_PROPS_PART):
            package.write(CUSTOM_PROPS_PART, _empty_custom_properties())
        self._record(transform_part(package, CUSTOM_PROPS_PART, "trust properties", add_trust_properties),
                     "Marked document as trusted")
        self._record(transform_part(package, CONTENT_TYPES_PART, "content type override",
                                    _ensure_override(CUSTOM_PROPS_PART, CT_CUSTOM_PROPERTIES)),
                     "Declared custom properties")
        self._record(transform_part(package, ROOT_RELS_PART, "package relationship",
                                    _ensure_relationship("", REL_CUSTOM_PROPERTIES, CUSTOM_PROPS_PART)),
                     "Linked custom properties")

    def add_trust_settings_part(self) -> None:
        package = self.package
        workbook = package.workbook_path
        if workbook is None:
            return
        if package.write(SECURITY_SETTINGS_PART, SECURITY_SETTINGS_XML):
            self.log.info(f"Added trust settings part {SECURITY_SETTINGS_PART}.")
        self._record(transform_part(package, CONTENT_TYPES_PART, "content type override",
                                    _ensure_override(SECURITY_SETTINGS_PART, CT_SECURITY_SETTINGS)),
                     "Declared trust settings")
        workbook_rels = rels_path_for(workbook)
        if not package.has(workbook_rels):
            package.write(workbook_rels, serialize_xml(empty_relationships()))
        self._record(transform_part(package, workbook_rels, "workbook relationship",
                                    _ensure_relationship(workbook, REL_SECURITY_SETTINGS, SECURITY_SETTINGS_PART)),
                     "Linked trust settings")

    def remove_vba_signature(self) -> None:
        package = self.package
        signatures = {p for p in package.paths() if _SIGNATURE_PART_RE.search(p)}
        if not signatures:
            self.log.info("No VBA signature present.")
            return

        for path in sorted(signatures):
            package.remove(path)
            self.log.info(f"Removed VBA signature part {path}.")

        for rels_path in [p for p in package.paths() if p.endswith(".rels")]:
            source = source_of_rels(rels_path)
            self._record(transform_part(package, rels_path, "signature relationship removal",
                                        _drop_relationships_to(source, signatures)),
                         "Removed signature relationships")

        if package.has(VBA_PROJECT_RELS):
            try:
                remaining = relationships(parse_xml(package.read(VBA_PROJECT_RELS)))
            except etree.XMLSyntaxError as exc:
                self.log.warning(f"Could not parse {VBA_PROJECT_RELS}: {exc}")
                remaining = None
            if remaining == []:
                package.remove(VBA_PROJECT_RELS)
                self.log.info(f"Removed empty {VBA_PROJECT_RELS}.")

        self._record(transform_part(package, CONTENT_TYPES_PART, "signature override removal",
                                    _drop_overrides_for(signatures)),
                     "Removed signature content types")


def relax_package(package: OfficePackage, options: Optional[RelaxOptions] = None,
                  log: Optional[ProcessLog] = None) -> RelaxReport:
    """
    Convenience function to run every enabled relaxation on *package*.

    Returns:
        RelaxReport listing each part operation
    """
    return TrustRelaxer(package, options, log).run()
