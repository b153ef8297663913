"""
Signature Scanner Module
Locates byte signatures inside binary buffers (vbaProject.bin, raw packages)
"""
from typing import List, Optional


def find_all(haystack: bytes, pattern: bytes,
             start: int = 0, end: Optional[int] = None) -> List[int]:
    """
    Find every offset where *pattern* occurs verbatim in *haystack*.

    Each start offset is reported once, in ascending order. Occurrences may
    overlap (``b"AAA"`` holds ``b"AA"`` at 0 and 1).

    Args:
        haystack: Buffer to search
        pattern: Non-empty byte signature
        start: First offset to consider
        end: Exclusive upper bound for a match to end at (defaults to buffer end)

    Returns:
        List of offsets, empty when the pattern is absent
    """
    if not pattern:
        raise ValueError("pattern must contain at least one byte")

    data = haystack if isinstance(haystack, (bytes, bytearray)) else bytes(haystack)
    limit = len(data) if end is None else min(end, len(data))
    offsets: List[int] = []

    pos = data.find(pattern, max(start, 0), limit)
    while pos != -1:
        offsets.append(pos)
        pos = data.find(pattern, pos + 1, limit)

    return offsets


def find_first(haystack: bytes, pattern: bytes) -> int:
    """Return the first offset of *pattern* or -1."""
    if not pattern:
        raise ValueError("pattern must contain at least one byte")
    data = haystack if isinstance(haystack, (bytes, bytearray)) else bytes(haystack)
    return data.find(pattern)


def contains_any(haystack: bytes, patterns) -> bool:
    """True when at least one of *patterns* occurs in *haystack*."""
    return any(find_first(haystack, p) != -1 for p in patterns)
