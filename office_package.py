"""
Office Package Module
In-memory view of a ZIP-packaged Office Open XML spreadsheet
"""
import io
import logging
import re
import zipfile
import zlib
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

import olefile
import openpyxl
from lxml import etree

from ooxml_parts import (
    CONTENT_TYPES_PART, ROOT_RELS_PART, SPREADSHEET_NS, is_well_formed, parse_xml, qn, serialize_xml,
)
from signature_scanner import contains_any

logger = logging.getLogger(__name__)

ZIP_SIGNATURE = b"PK\x03\x04"
OLE_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

WORKBOOK_XML = "xl/workbook.xml"
WORKBOOK_BIN = "xl/workbook.bin"
VBA_PROJECT_PART = "xl/vbaProject.bin"

REQUIRED_PARTS = (CONTENT_TYPES_PART, ROOT_RELS_PART)

VBA_CONTENT_MARKERS = (b"VBAProject", b"_VBA_PROJECT", b"vba/", b"Visual Basic")

_WORKSHEET_RE = re.compile(r"^xl/worksheets/[^/]+\.(xml|bin)$")


class PackageError(ValueError):
    """Fatal problem with the uploaded package (not a ZIP, missing parts, no VBA...)."""


def is_zip_container(data: bytes) -> bool:
    return data[:4] == ZIP_SIGNATURE


def is_ole_container(data: bytes) -> bool:
    if len(data) < olefile.MINIMAL_OLEFILE_SIZE or data[:8] != OLE_SIGNATURE:
        return False
    return olefile.isOleFile(data)


def detect_vba_content(data: bytes) -> bool:
    """Cheap heuristic: does the raw file mention a VBA project at all?"""
    return contains_any(data, VBA_CONTENT_MARKERS)


class OfficePackage:
    """Map of part path -> bytes backed by a ZIP archive."""

    def __init__(self, parts: Optional[Dict[str, bytes]] = None,
                 unreadable: Optional[Set[str]] = None):
        """
        Initialize the package.

        Args:
            parts: Part contents keyed by ZIP path, in archive order
            unreadable: Entries listed in the archive whose data could not be read
        """
        self._parts: Dict[str, bytes] = dict(parts or {})
        self.unreadable: Set[str] = set(unreadable or ())
        self.modified: Set[str] = set()
        self.removed: Set[str] = set()

    # -- loading / saving ------------------------------------------------

    @classmethod
    def from_bytes(cls, data: bytes) -> "OfficePackage":
        """
        Load a package from uploaded bytes.

        Raises:
            PackageError: if the data is not a readable ZIP archive
        """
        if not is_zip_container(data):
            raise PackageError("Not a ZIP-based Office package")

        parts: Dict[str, bytes] = {}
        unreadable: Set[str] = set()
        try:
            with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
                for info in zf.infolist():
                    if info.is_dir():
                        continue
                    try:
                        parts[info.filename] = zf.read(info)
                    except (zipfile.BadZipFile, zlib.error, NotImplementedError) as exc:
                        logger.warning("Could not read %s: %s", info.filename, exc)
                        unreadable.add(info.filename)
        except zipfile.BadZipFile as exc:
            raise PackageError(f"Invalid or corrupted ZIP archive: {exc}") from exc

        if not parts and not unreadable:
            raise PackageError("ZIP archive contains no entries")

        return cls(parts, unreadable)

    def to_bytes(self, compresslevel: int = 9) -> bytes:
        """Re-serialize the package as a deflated ZIP archive."""
        buffer = io.BytesIO()
        ordered = sorted(self._parts, key=lambda p: p != CONTENT_TYPES_PART)
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED, compresslevel=compresslevel) as zf:
            for path in ordered:
                zf.writestr(path, self._parts[path])
        return buffer.getvalue()

    # -- part access -----------------------------------------------------

    def paths(self) -> List[str]:
        return list(self._parts)

    def has(self, path: str) -> bool:
        return path in self._parts

    def read(self, path: str) -> bytes:
        try:
            return self._parts[path]
        except KeyError:
            raise KeyError(f"Part not found: {path}") from None

    def read_text(self, path: str, encoding: str = "utf-8") -> str:
        return self.read(path).decode(encoding)

    def write(self, path: str, data: bytes) -> bool:
        """Store *data* at *path*; returns False when the content is unchanged."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        if self._parts.get(path) == data:
            return False
        self._parts[path] = bytes(data)
        self.modified.add(path)
        self.removed.discard(path)
        self.unreadable.discard(path)
        return True

    def remove(self, path: str) -> bool:
        existed = self._parts.pop(path, None) is not None or path in self.unreadable
        self.unreadable.discard(path)
        if existed:
            self.removed.add(path)
            self.modified.discard(path)
        return existed

    def __contains__(self, path: str) -> bool:
        return self.has(path)

    def __len__(self) -> int:
        return len(self._parts)

    # -- structure -------------------------------------------------------

    @property
    def workbook_path(self) -> Optional[str]:
        for candidate in (WORKBOOK_XML, WORKBOOK_BIN):
            if candidate in self._parts:
                return candidate
        return None

    @property
    def is_binary_workbook(self) -> bool:
        return self.workbook_path == WORKBOOK_BIN

    def validate(self) -> None:
        """
        Check the parts every spreadsheet package must carry.

        Raises:
            PackageError: if a required part is missing
        """
        missing = [p for p in REQUIRED_PARTS if p not in self._parts]
        if missing:
            raise PackageError(f"Missing required Office files: {', '.join(missing)}")
        if self.workbook_path is None:
            raise PackageError("Not a valid Excel file structure: xl/workbook.xml is missing")

    def find_vba_project(self) -> Optional[str]:
        """Path of the VBA project part, preferring ``xl/vbaProject.bin``."""
        if VBA_PROJECT_PART in self._parts:
            return VBA_PROJECT_PART
        candidates = sorted(p for p in self._parts if p.lower().endswith("vbaproject.bin"))
        return candidates[0] if candidates else None

    def worksheet_paths(self) -> List[str]:
        return sorted(p for p in self._parts if _WORKSHEET_RE.match(p))

    def sheet_names(self) -> List[str]:
        """
        Sheet names as the spreadsheet parser sees them.

        openpyxl is tried first; packages it refuses (xlsb, damaged parts)
        fall back to reading the ``<sheets>`` list directly.
        """
        try:
            wb = openpyxl.load_workbook(io.BytesIO(self.to_bytes(compresslevel=1)),
                                        read_only=True, keep_vba=False)
            try:
                return list(wb.sheetnames)
            finally:
                wb.close()
        except Exception as exc:
            logger.debug("openpyxl could not read sheet names: %s", exc)

        if WORKBOOK_XML not in self._parts:
            return []
        try:
            root = parse_xml(self._parts[WORKBOOK_XML])
        except etree.XMLSyntaxError as exc:
            logger.warning("Could not parse %s: %s", WORKBOOK_XML, exc)
            return []
        ns = etree.QName(root).namespace or SPREADSHEET_NS
        return [s.get("name") for s in root.iter(qn(ns, "sheet")) if s.get("name")]


# ---------------------------------------------------------------------------
# Per-part XML edits
# ---------------------------------------------------------------------------

Mutator = Callable[[etree._Element], bool]


@dataclass
class PartResult:
    """Outcome of one operation on one part: changed, unchanged or skipped."""
    path: str
    operation: str
    changed: bool = False
    skipped_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


def transform_part(package: OfficePackage, path: str, operation: str, mutate: Mutator) -> PartResult:
    """
    Parse *path*, apply *mutate* and write the result back when it changed.

    Args:
        package: Package being edited
        path: Part to transform
        operation: Label used in the result
        mutate: Function editing the root element in place; returns True on change

    Returns:
        PartResult; parse failures, mutator errors and malformed output become skips
    """
    if not package.has(path):
        return PartResult(path, operation, skipped_reason="part not found")
    try:
        root = parse_xml(package.read(path))
    except etree.XMLSyntaxError as exc:
        logger.warning("Could not parse %s: %s", path, exc)
        return PartResult(path, operation, skipped_reason=f"XML parse error: {exc}")

    try:
        changed = mutate(root)
    except Exception as exc:
        logger.warning("%s failed on %s: %s", operation, path, exc)
        return PartResult(path, operation, skipped_reason=f"{operation} failed: {exc}")
    if not changed:
        return PartResult(path, operation)

    data = serialize_xml(root)
    if not is_well_formed(data):
        return PartResult(path, operation, skipped_reason="result is not well-formed XML")
    package.write(path, data)
    return PartResult(path, operation, changed=True)
