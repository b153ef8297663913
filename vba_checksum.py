"""
VBA Checksum Module
Re-stamps the header checksum of a vbaProject.bin buffer after mutation.

The checksum is the additive sum of every byte after the 8-byte header,
truncated to 32 bits and stored little-endian at offset 4. This is the
definition the unlocker reads and writes consistently; it is not the
integrity algorithm Office itself validates.
"""
import struct

HEADER_SIZE = 8
CHECKSUM_OFFSET = 4


class ChecksumError(ValueError):
    """Raised when a buffer is too small to carry the checksum header."""


def compute_checksum(buffer: bytes) -> int:
    """Return ``sum(buffer[8:]) mod 2**32``."""
    if len(buffer) < HEADER_SIZE:
        raise ChecksumError(
            f"VBA binary too small for checksum header ({len(buffer)} < {HEADER_SIZE} bytes)"
        )
    return sum(memoryview(buffer)[HEADER_SIZE:]) & 0xFFFFFFFF


def read_checksum(buffer: bytes) -> int:
    """Return the checksum currently stored in the header."""
    if len(buffer) < HEADER_SIZE:
        raise ChecksumError(
            f"VBA binary too small for checksum header ({len(buffer)} < {HEADER_SIZE} bytes)"
        )
    return struct.unpack_from("<I", buffer, CHECKSUM_OFFSET)[0]


def restamp(buffer: bytes) -> bytes:
    """
    Write the recomputed checksum into a copy of *buffer*.

    Args:
        buffer: VBA binary, at least 8 bytes long

    Returns:
        New buffer whose bytes 4..8 hold the little-endian checksum

    Raises:
        ChecksumError: if the buffer is shorter than the header
    """
    checksum = compute_checksum(buffer)
    stamped = bytearray(buffer)
    struct.pack_into("<I", stamped, CHECKSUM_OFFSET, checksum)
    return bytes(stamped)


def is_consistent(buffer: bytes) -> bool:
    """True when the stored checksum matches the recomputed one."""
    return read_checksum(buffer) == compute_checksum(buffer)
