"""
VBA Protection Module
Clears VBA project password/protection evidence inside vbaProject.bin

The binary is never parsed structurally. Every known marker lives in a
single declarative catalogue (pattern -> clearing rule); the neutralizer
walks the catalogue, asks the signature scanner for every occurrence and
applies the rule's clearing function to each one independently.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from signature_scanner import find_all

logger = logging.getLogger(__name__)

# Rule kinds
VALUE = "value"      # printable payload after the marker (DPB=, CMG=, GC=)
FLAG = "flag"        # pattern ends with the 0x01 flag byte itself
WINDOW = "window"    # 0x01 flags somewhere in a look-ahead window
LOCK = "lock"        # lock byte at a fixed offset past the marker

NULL_FILL = 0x00
SPACE_FILL = 0x20

# Offsets closer than this to the end of the buffer cannot hold a full record
TAIL_GUARD = 100
DEFAULT_WINDOW = 20
LOCK_BYTE_OFFSET = 1


@dataclass(frozen=True)
class MarkerRule:
    """One catalogue entry: a byte signature and how to clear it."""
    name: str
    pattern: bytes
    kind: str
    window: int = 0
    offset: int = 0


@dataclass
class ProtectionMarker:
    """A protection location that was found and cleared."""
    offset: int
    pattern_name: str
    match_length: int
    cleared_bytes: int = 0


@dataclass
class NeutralizeResult:
    """Outcome of a neutralization pass."""
    data: bytes
    markers: List[ProtectionMarker] = field(default_factory=list)
    rejected_offsets: List[int] = field(default_factory=list)

    @property
    def protection_found(self) -> bool:
        return bool(self.markers)


PROTECTION_CATALOGUE: Tuple[MarkerRule, ...] = (
    # Hash/state values in the PROJECT stream
    MarkerRule("DPB=", b"DPB=", VALUE),
    MarkerRule("CMG=", b"CMG=", VALUE),
    MarkerRule("GC=", b"GC=", VALUE),
    # Protection flags stored right after a short tag
    MarkerRule("DPx", b"DPx\x01", FLAG),
    MarkerRule("DPb", b"DPb\x01", FLAG),
    MarkerRule("DPI", b"DPI\x01", FLAG),
    # Text markers with a flag byte shortly after
    MarkerRule("VBAProjectProtection", b"VBAProjectProtection", WINDOW, window=DEFAULT_WINDOW),
    MarkerRule("ProjectProtection", b"ProjectProtection", WINDOW, window=DEFAULT_WINDOW),
    MarkerRule("PasswordProtection", b"PasswordProtection", WINDOW, window=DEFAULT_WINDOW),
    MarkerRule("Protection", b"Protection", WINDOW, window=DEFAULT_WINDOW),
    MarkerRule("PROJECTLOCKED", b"PROJECTLOCKED", LOCK, offset=LOCK_BYTE_OFFSET),
    # Macro trust switches
    MarkerRule("AccessVBOM", b"AccessVBOM", WINDOW, window=DEFAULT_WINDOW),
    MarkerRule("VBAWarnings", b"VBAWarnings", WINDOW, window=DEFAULT_WINDOW),
    MarkerRule("DisableAttachmentsInPV", b"DisableAttachmentsInPV", WINDOW, window=DEFAULT_WINDOW),
    MarkerRule("BlockContentExecution", b"BlockContentExecution", WINDOW, window=DEFAULT_WINDOW),
)


def _is_payload_byte(value: int) -> bool:
    return 32 <= value <= 126 or value in (0x0D, 0x0A)


def _clear_value(buf: bytearray, index: int, rule: MarkerRule, fill: int) -> int:
    start = index + len(rule.pattern)
    end = start
    while end < len(buf) and _is_payload_byte(buf[end]):
        end += 1

    if all(b == fill for b in buf[start:end]):
        return 0
    buf[start:end] = bytes([fill]) * (end - start)
    return end - start


def _clear_flag(buf: bytearray, index: int, rule: MarkerRule, fill: int) -> int:
    flag_at = index + len(rule.pattern) - 1
    buf[flag_at] = 0x00
    return 1


def _clear_window(buf: bytearray, index: int, rule: MarkerRule, fill: int) -> int:
    start = index + len(rule.pattern)
    end = min(start + rule.window, len(buf))
    cleared = 0
    for i in range(start, end):
        if buf[i] == 0x01:
            buf[i] = 0x00
            cleared += 1
    return cleared


def _clear_lock(buf: bytearray, index: int, rule: MarkerRule, fill: int) -> int:
    lock_at = index + len(rule.pattern) + rule.offset
    if lock_at >= len(buf) or buf[lock_at] == 0x00:
        return 0
    buf[lock_at] = 0x00
    return 1


_CLEARERS: Dict[str, Callable[[bytearray, int, MarkerRule, int], int]] = {
    VALUE: _clear_value,
    FLAG: _clear_flag,
    WINDOW: _clear_window,
    LOCK: _clear_lock,
}


def is_plausible_position(index: int, buffer: bytes) -> bool:
    """Reject offsets within the last TAIL_GUARD bytes of the buffer."""
    return index <= len(buffer) - TAIL_GUARD


def neutralize(buffer: bytes,
               fill: int = NULL_FILL,
               catalogue: Tuple[MarkerRule, ...] = PROTECTION_CATALOGUE,
               on_log: Optional[Callable[[str, str], None]] = None) -> NeutralizeResult:
    """
    Clear every catalogued protection marker in a copy of *buffer*.

    Args:
        buffer: Raw vbaProject.bin bytes
        fill: Byte written over value payloads (0x00, or 0x20 next to XML)
        catalogue: Marker rules to apply, in order
        on_log: Optional ``(message, severity)`` callback

    Returns:
        NeutralizeResult with the new buffer and the markers that were cleared.
        When nothing is found the returned data equals the input.
    """
    def emit(message: str, severity: str = "info") -> None:
        logger.debug(message)
        if on_log:
            on_log(message, severity)

    buf = bytearray(buffer)
    result = NeutralizeResult(data=b"")
    # Nested text markers (VBAProjectProtection/ProjectProtection/Protection)
    # share an end offset; only the first one owns that window.
    handled_ends: Set[int] = set()

    for rule in catalogue:
        indices = find_all(buf, rule.pattern)
        if not indices:
            continue

        emit(f"Found {len(indices)} {rule.name} pattern(s) in vbaProject.bin.")
        clear = _CLEARERS[rule.kind]

        for index in indices:
            if not is_plausible_position(index, buf):
                emit(f"Suspicious pattern position at offset {index}", "warning")
                result.rejected_offsets.append(index)
                continue

            end = index + len(rule.pattern)
            if rule.kind == WINDOW:
                if end in handled_ends:
                    continue
                handled_ends.add(end)

            cleared = clear(buf, index, rule, fill)
            if cleared:
                result.markers.append(ProtectionMarker(
                    offset=index,
                    pattern_name=rule.name,
                    match_length=len(rule.pattern),
                    cleared_bytes=cleared,
                ))

    if not result.markers:
        emit("No password protection patterns found in vbaProject.bin.")
        result.data = bytes(buffer)
        return result

    emit(f"Cleared {len(result.markers)} protection marker(s) in vbaProject.bin.", "success")
    result.data = bytes(buf)
    return result
