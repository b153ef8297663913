"""
OOXML Parts Module
Shared helpers for the XML parts of an Office Open XML package:
namespaces, lxml parsing/serialization, content types and relationships.
"""
import posixpath
from typing import Dict, Iterable, List, Optional

from lxml import etree

# Namespaces
CONTENT_TYPES_NS = "http://schemas.openxmlformats.org/package/2006/content-types"
PACKAGE_RELS_NS = "http://schemas.openxmlformats.org/package/2006/relationships"
OFFICE_RELS_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
SPREADSHEET_NS = "http://schemas.openxmlformats.org/spreadsheetml/2006/main"
CUSTOM_PROPS_NS = "http://schemas.openxmlformats.org/officeDocument/2006/custom-properties"
VT_NS = "http://schemas.openxmlformats.org/officeDocument/2006/docPropsVTypes"

# Relationship types
REL_WORKSHEET = OFFICE_RELS_NS + "/worksheet"
REL_STYLES = OFFICE_RELS_NS + "/styles"
REL_SHARED_STRINGS = OFFICE_RELS_NS + "/sharedStrings"
REL_CUSTOM_PROPERTIES = OFFICE_RELS_NS + "/custom-properties"
REL_VBA_PROJECT = "http://schemas.microsoft.com/office/2006/relationships/vbaProject"
REL_SECURITY_SETTINGS = "http://schemas.microsoft.com/office/2006/relationships/excelSecuritySettings"

# Content types
CT_VBA_PROJECT = "application/vnd.ms-office.vbaProject"
CT_RELATIONSHIPS = "application/vnd.openxmlformats-package.relationships+xml"
CT_XML = "application/xml"
CT_VML = "application/vnd.openxmlformats-officedocument.vmlDrawing"
CT_WORKBOOK = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet.main+xml"
CT_WORKBOOK_MACRO = "application/vnd.ms-excel.sheet.macroEnabled.main+xml"
CT_WORKBOOK_BINARY = "application/vnd.ms-excel.sheet.binary.macroEnabled.main"
CT_WORKSHEET = "application/vnd.openxmlformats-officedocument.spreadsheetml.worksheet+xml"
CT_WORKSHEET_BINARY = "application/vnd.ms-excel.worksheet"
CT_CUSTOM_PROPERTIES = "application/vnd.openxmlformats-officedocument.custom-properties+xml"
CT_SECURITY_SETTINGS = "application/vnd.ms-excel.securitySettings+xml"

DEFAULT_CONTENT_TYPES: Dict[str, str] = {
    "bin": CT_VBA_PROJECT,
    "rels": CT_RELATIONSHIPS,
    "xml": CT_XML,
    "vml": CT_VML,
    "png": "image/png",
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "gif": "image/gif",
    "emf": "image/x-emf",
    "wmf": "image/x-wmf",
    "tif": "image/tiff",
    "tiff": "image/tiff",
}
FALLBACK_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES_PART = "[Content_Types].xml"
ROOT_RELS_PART = "_rels/.rels"

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)


def parse_xml(data: bytes) -> etree._Element:
    """Parse an XML part; raises ``etree.XMLSyntaxError`` on malformed input."""
    return etree.fromstring(data, parser=_PARSER)


def serialize_xml(root: etree._Element) -> bytes:
    """Serialize a part root back to bytes with a standalone declaration."""
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", standalone=True)


def is_well_formed(data: bytes) -> bool:
    try:
        parse_xml(data)
    except etree.XMLSyntaxError:
        return False
    return True


def qn(namespace: str, tag: str) -> str:
    return f"{{{namespace}}}{tag}"


def namespace_of(element: etree._Element) -> str:
    return etree.QName(element).namespace or ""


def local_name(element: etree._Element) -> str:
    return etree.QName(element).localname


def remove_element(element: etree._Element) -> None:
    """Detach *element* while keeping its tail text in the document."""
    parent = element.getparent()
    if parent is None:
        return
    if element.tail:
        previous = element.getprevious()
        if previous is not None:
            previous.tail = (previous.tail or "") + element.tail
        else:
            parent.text = (parent.text or "") + element.tail
    parent.remove(element)


def new_child(parent: etree._Element, tag: str, attrib: Dict[str, str],
              index: Optional[int] = None) -> etree._Element:
    """Create a child element with attributes in insertion order."""
    child = etree.Element(tag)
    for key, value in attrib.items():
        child.set(key, value)
    if index is None:
        parent.append(child)
    else:
        parent.insert(index, child)
    return child


# ---------------------------------------------------------------------------
# Part paths
# ---------------------------------------------------------------------------

def part_name(path: str) -> str:
    """ZIP path -> PartName (``xl/workbook.xml`` -> ``/xl/workbook.xml``)."""
    return "/" + path.lstrip("/")


def zip_path(name: str) -> str:
    """PartName -> ZIP path."""
    return name.lstrip("/")


def extension_of(path: str) -> str:
    base = posixpath.basename(path)
    if "." not in base:
        return ""
    return base.rsplit(".", 1)[1].lower()


def rels_path_for(path: str) -> str:
    """Relationship part that belongs to *path* (``xl/workbook.xml`` -> ``xl/_rels/workbook.xml.rels``)."""
    directory, base = posixpath.split(path)
    return posixpath.join(directory, "_rels", base + ".rels")


def source_of_rels(rels_path: str) -> str:
    """Inverse of :func:`rels_path_for`; ``_rels/.rels`` maps to the package root ``""``."""
    directory, base = posixpath.split(rels_path)
    owner_dir = posixpath.dirname(directory)
    owner = base[: -len(".rels")] if base.endswith(".rels") else base
    return posixpath.join(owner_dir, owner) if owner else owner_dir


def resolve_target(source_path: str, target: str) -> str:
    """Resolve a relationship Target against the directory of its source part."""
    if target.startswith("/"):
        return posixpath.normpath(target.lstrip("/"))
    base_dir = posixpath.dirname(source_path)
    return posixpath.normpath(posixpath.join(base_dir, target))


def relative_target(source_path: str, target_path: str) -> str:
    """Target attribute for *target_path* as seen from *source_path*."""
    base_dir = posixpath.dirname(source_path) or "."
    return posixpath.relpath(target_path, base_dir)


# ---------------------------------------------------------------------------
# Relationships
# ---------------------------------------------------------------------------

def empty_relationships() -> etree._Element:
    return etree.Element(qn(PACKAGE_RELS_NS, "Relationships"), nsmap={None: PACKAGE_RELS_NS})


def relationships(root: etree._Element) -> List[etree._Element]:
    return [child for child in root if isinstance(child.tag, str) and local_name(child) == "Relationship"]


def next_relationship_id(used: Iterable[str], start: int = 1) -> str:
    taken = set(used)
    n = start
    while f"rId{n}" in taken:
        n += 1
    return f"rId{n}"


def add_relationship(root: etree._Element, rel_type: str, target: str,
                     rel_id: Optional[str] = None) -> str:
    """Append a Relationship and return its Id."""
    if rel_id is None:
        rel_id = next_relationship_id(rel.get("Id", "") for rel in relationships(root))
    new_child(root, qn(namespace_of(root) or PACKAGE_RELS_NS, "Relationship"),
              {"Id": rel_id, "Type": rel_type, "Target": target})
    return rel_id


def relationship_targets(root: etree._Element, source_path: str) -> Dict[str, str]:
    """Map relationship Id -> resolved package path (internal targets only)."""
    targets: Dict[str, str] = {}
    for rel in relationships(root):
        if rel.get("TargetMode") == "External":
            continue
        target = rel.get("Target")
        if target:
            targets[rel.get("Id", "")] = resolve_target(source_path, target)
    return targets


# ---------------------------------------------------------------------------
# Content types
# ---------------------------------------------------------------------------

def content_type_defaults(root: etree._Element) -> Dict[str, etree._Element]:
    return {
        (el.get("Extension") or "").lower(): el
        for el in root if isinstance(el.tag, str) and local_name(el) == "Default"
    }


def content_type_overrides(root: etree._Element) -> List[etree._Element]:
    return [el for el in root if isinstance(el.tag, str) and local_name(el) == "Override"]


def add_override(root: etree._Element, path: str, content_type: str) -> None:
    new_child(root, qn(namespace_of(root) or CONTENT_TYPES_NS, "Override"),
              {"PartName": part_name(path), "ContentType": content_type})


def add_default(root: etree._Element, extension: str, content_type: str) -> None:
    # Defaults precede Overrides in the schema
    overrides = content_type_overrides(root)
    index = root.index(overrides[0]) if overrides else None
    new_child(root, qn(namespace_of(root) or CONTENT_TYPES_NS, "Default"),
              {"Extension": extension, "ContentType": content_type}, index=index)
