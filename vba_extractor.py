"""
VBA Extractor Module
Extracts VBA modules from a vbaProject.bin (or a legacy .xls OLE file)

Three strategies of decreasing precision are tried in order, each at most
once, and the first one that yields modules wins:

1. structured  - oletools parses the OLE container and decompresses every
                 module stream (confidence ``full``)
2. signature   - the raw binary is scanned for ``Attribute VB_Name = "``
                 markers (confidence ``partial``)
3. placeholder - one stub module per known sheet plus ``ThisWorkbook``
                 (confidence ``placeholder``)
"""
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from oletools.olevba import VBA_Parser

from office_package import is_ole_container
from signature_scanner import find_all

logger = logging.getLogger(__name__)


class ModuleType(str, Enum):
    STANDARD = "standard"
    CLASS = "class"
    FORM = "form"
    DOCUMENT = "document"
    UNKNOWN = "unknown"

    @property
    def label(self) -> str:
        return _TYPE_LABELS[self]

    @property
    def sort_rank(self) -> int:
        return _SORT_ORDER.index(self)


_TYPE_LABELS = {
    ModuleType.STANDARD: "Standard Module",
    ModuleType.CLASS: "Class Module",
    ModuleType.FORM: "UserForm",
    ModuleType.DOCUMENT: "Document Module",
    ModuleType.UNKNOWN: "Unknown",
}

_SORT_ORDER = (
    ModuleType.DOCUMENT,
    ModuleType.STANDARD,
    ModuleType.CLASS,
    ModuleType.FORM,
    ModuleType.UNKNOWN,
)


class ExtractionConfidence(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    PLACEHOLDER = "placeholder"


@dataclass
class ModuleDescriptor:
    """A single extracted VBA module."""
    name: str
    type: ModuleType
    code: str
    confidence: ExtractionConfidence
    stream_path: str = ""

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "type": self.type.value,
            "type_label": self.type.label,
            "code": self.code,
            "confidence": self.confidence.value,
            "stream_path": self.stream_path,
        }


@dataclass
class ExtractionSource:
    """Everything the strategies may look at."""
    vba_data: Optional[bytes]
    filename: str = "vbaProject.bin"
    sheet_names: List[str] = field(default_factory=list)
    vba_present: bool = False


Strategy = Callable[[ExtractionSource], Optional[List[ModuleDescriptor]]]


# ---------------------------------------------------------------------------
# Classification and decoding
# ---------------------------------------------------------------------------

VB_NAME_MARKER = b'Attribute VB_Name = "'
MAX_MODULE_NAME = 64
HEADER_LOOKBACK = 256
CLASS_HEADER = b"VERSION 1.0 CLASS"
FORM_HEADER = b"VERSION 5.00"

PLACEHOLDER_CODE = (
    "' Module: {name}\r\n"
    "' Code could not be fully extracted\r\n"
    "' This is a placeholder for the module structure"
)

_VB_NAME_RE = re.compile(r'Attribute\s+VB_Name\s*=\s*"', re.IGNORECASE)
_PREDECLARED_RE = re.compile(r"Attribute\s+VB_PredeclaredId\s*=\s*True", re.IGNORECASE)
_EXPOSED_RE = re.compile(r"Attribute\s+VB_Exposed\s*=\s*True", re.IGNORECASE)
_NOT_CREATABLE_RE = re.compile(r"Attribute\s+VB_Creatable\s*=\s*False", re.IGNORECASE)
_NOT_GLOBAL_RE = re.compile(r"Attribute\s+VB_GlobalNameSpace\s*=\s*False", re.IGNORECASE)
# Designer modules carry two GUIDs in VB_Base: "0{class}{designer}"
_FORM_BASE_RE = re.compile(r'Attribute\s+VB_Base\s*=\s*"0\{[^}]*\}\{', re.IGNORECASE)

_DOCUMENT_NAMES = ("thisworkbook", "thisdocument")

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")
_LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")

# UTF-8 punctuation that was decoded as cp1252
MOJIBAKE_FIXES = {
    "â€“": "–",
    "â€”": "—",
    "â€˜": "‘",
    "â€™": "’",
    "â€œ": "“",
    "â€\u009d": "”",
    "â€¦": "…",
    "Â©": "©",
    "Â®": "®",
    "â„¢": "™",
}


def classify_module(name: str, code: str) -> ModuleType:
    """
    Detect the type of a VBA module from its name and attribute lines.

    Precedence: document > form > class > standard > unknown.

    Args:
        name: Module name
        code: Module source (attribute header included when available)

    Returns:
        ModuleType
    """
    lowered = (name or "").lower()
    code = code or ""

    if (lowered in _DOCUMENT_NAMES or lowered.startswith("sheet")
            or (_PREDECLARED_RE.search(code) and _EXPOSED_RE.search(code))):
        return ModuleType.DOCUMENT

    if (lowered.startswith("userform") or "Begin VB.Form" in code
            or "Begin {" in code or _FORM_BASE_RE.search(code)):
        return ModuleType.FORM

    if _NOT_CREATABLE_RE.search(code) and _NOT_GLOBAL_RE.search(code):
        return ModuleType.CLASS

    if _VB_NAME_RE.search(code):
        return ModuleType.STANDARD

    return ModuleType.UNKNOWN


def clean_and_decode(code) -> str:
    """
    Tidy extracted source text. Never raises; bad input only degrades output.

    Strips control characters, replaces U+FFFD with ``?``, repairs known
    mis-encoded punctuation, trims and normalizes line endings to CRLF.
    """
    if code is None:
        return ""
    if isinstance(code, (bytes, bytearray)):
        text = bytes(code).decode("cp1252", errors="replace")
    else:
        text = str(code)

    text = _CONTROL_CHARS_RE.sub("", text)
    text = text.replace("\ufffd", "?")
    for broken, fixed in MOJIBAKE_FIXES.items():
        text = text.replace(broken, fixed)
    text = text.strip()
    return _LINE_BREAK_RE.sub("\r\n", text)


def sort_modules(modules: Sequence[ModuleDescriptor]) -> List[ModuleDescriptor]:
    """Order modules document, standard, class, form, unknown; then by name."""
    return sorted(modules, key=lambda m: (m.type.sort_rank, m.name.lower()))


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def structured_strategy(source: ExtractionSource) -> Optional[List[ModuleDescriptor]]:
    """Decode every module stream with oletools; only for intact OLE containers."""
    data = source.vba_data
    if not data or not is_ole_container(data):
        logger.debug("Structured extraction skipped: no OLE container")
        return None

    modules: List[ModuleDescriptor] = []
    vba_parser = None
    try:
        vba_parser = VBA_Parser(source.filename, data=data)
        if not vba_parser.detect_vba_macros():
            return None
        for (_, stream_path, vba_filename, vba_code) in vba_parser.extract_macros():
            if not vba_code or not vba_code.strip():
                continue
            name = os.path.splitext(vba_filename or "")[0] or "Unknown"
            code = clean_and_decode(vba_code)
            modules.append(ModuleDescriptor(
                name=name,
                type=classify_module(name, code),
                code=code,
                confidence=ExtractionConfidence.FULL,
                stream_path=stream_path or "",
            ))
    except Exception as exc:
        logger.warning("oletools could not parse the VBA project: %s", exc)
        return None
    finally:
        if vba_parser is not None:
            vba_parser.close()

    return modules or None


def _read_module_name(data: bytes, start: int) -> str:
    end = data.find(b'"', start, start + MAX_MODULE_NAME + 1)
    if end <= start:
        return ""
    return data[start:end].decode("cp1252", errors="replace").strip()


def _span_start(data: bytes, marker_at: int, floor: int) -> int:
    """Move a module's start back onto its VERSION header when one precedes it."""
    low = max(floor, marker_at - HEADER_LOOKBACK)
    best = marker_at
    for header in (CLASS_HEADER, FORM_HEADER):
        at = data.rfind(header, low, marker_at)
        if at != -1 and at < best:
            best = at
    return best


def signature_strategy(source: ExtractionSource) -> Optional[List[ModuleDescriptor]]:
    """Locate modules by their ``Attribute VB_Name`` line in the raw bytes."""
    data = source.vba_data
    if not data:
        return None

    markers = find_all(data, VB_NAME_MARKER)
    if not markers:
        return None

    # A module runs from its header (or VB_Name line) to where the next one starts
    starts: List[int] = []
    previous_end = 0
    for marker_at in markers:
        starts.append(_span_start(data, marker_at, previous_end))
        previous_end = marker_at + len(VB_NAME_MARKER)

    modules: List[ModuleDescriptor] = []
    seen = set()
    for i, marker_at in enumerate(markers):
        name = _read_module_name(data, marker_at + len(VB_NAME_MARKER))
        if not name or name in seen:
            continue

        span_end = starts[i + 1] if i + 1 < len(markers) else len(data)
        code = clean_and_decode(data[starts[i]:span_end])
        if not code:
            continue
        seen.add(name)
        modules.append(ModuleDescriptor(
            name=name,
            type=classify_module(name, code),
            code=code,
            confidence=ExtractionConfidence.PARTIAL,
            stream_path=f"offset:{marker_at}",
        ))

    return modules or None


def placeholder_strategy(source: ExtractionSource) -> Optional[List[ModuleDescriptor]]:
    """Stub modules named after the workbook's sheets."""
    if not (source.vba_present or source.sheet_names):
        return None

    names = [f"Sheet_{sheet}" for sheet in source.sheet_names]
    names.append("ThisWorkbook")
    return [
        ModuleDescriptor(
            name=name,
            type=classify_module(name, ""),
            code=PLACEHOLDER_CODE.format(name=name),
            confidence=ExtractionConfidence.PLACEHOLDER,
        )
        for name in names
    ]


STRATEGIES: List[Strategy] = [structured_strategy, signature_strategy, placeholder_strategy]


class VBAExtractor:
    """Run the extraction strategies over one VBA project."""

    def __init__(self, source: ExtractionSource, strategies: Optional[Sequence[Strategy]] = None,
                 on_log: Optional[Callable[[str, str], None]] = None):
        """
        Initialize the VBA extractor.

        Args:
            source: VBA bytes plus what is known about the workbook
            strategies: Ordered strategies (defaults to STRATEGIES)
            on_log: Optional ``(message, severity)`` callback
        """
        self.source = source
        self.strategies = list(strategies if strategies is not None else STRATEGIES)
        self._on_log = on_log
        self.strategy_used: Optional[str] = None

    def _emit(self, message: str, severity: str = "info") -> None:
        logger.debug(message)
        if self._on_log:
            self._on_log(message, severity)

    def extract_all(self) -> List[ModuleDescriptor]:
        """
        Extract all VBA modules.

        Returns:
            Sorted ModuleDescriptor list, empty when every strategy came up dry
        """
        for strategy in self.strategies:
            label = strategy.__name__.replace("_strategy", "")
            self._emit(f"Trying {label} extraction...")
            modules = strategy(self.source)
            if modules:
                self.strategy_used = label
                severity = "warning" if label == "placeholder" else "success"
                self._emit(f"{label.capitalize()} extraction found {len(modules)} module(s).", severity)
                return sort_modules(modules)
            self._emit(f"{label.capitalize()} extraction found no modules.")

        self._emit("No VBA modules could be extracted.", "warning")
        return []


def extract_vba_from_bytes(vba_data: bytes, sheet_names: Optional[List[str]] = None,
                           filename: str = "vbaProject.bin") -> List[ModuleDescriptor]:
    """
    Convenience function to extract VBA modules from raw vbaProject.bin bytes.

    Args:
        vba_data: Contents of vbaProject.bin (or a legacy OLE workbook)
        sheet_names: Sheet names used for placeholders
        filename: Name reported to oletools

    Returns:
        List of ModuleDescriptor
    """
    source = ExtractionSource(
        vba_data=vba_data,
        filename=filename,
        sheet_names=list(sheet_names or []),
        vba_present=bool(vba_data),
    )
    return VBAExtractor(source).extract_all()
