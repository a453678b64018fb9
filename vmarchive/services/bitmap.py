"""
Changed-block bitmap for incremental disk dumps.

One bit per fixed-size block of a virtual disk. The on-disk form is the
decimal bit count in ASCII, a NUL byte, then the bits packed eight to a byte
with the lowest block number in the most significant bit.
"""
import logging
from pathlib import Path
from typing import BinaryIO, Iterable, Tuple, Union

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_SIZE = 1024 * 1024
MAX_HEADER_LENGTH = 20


class BitmapFormatError(Exception):
    """Raised when a serialized bitmap is malformed or truncated."""
    pass


class ChangedBlockBitmap:
    """Bit-per-block record of which parts of a disk changed."""

    def __init__(self, disk_size: int, block_size: int = DEFAULT_BLOCK_SIZE):
        """
        Create an all-zero bitmap.

        Args:
            disk_size: Disk capacity in bytes
            block_size: Bytes covered by one bit
        """
        if block_size <= 0:
            raise ValueError(f"Block size must be positive: {block_size}")
        if disk_size < 0:
            raise ValueError(f"Disk size must not be negative: {disk_size}")
        self.disk_size = disk_size
        self.block_size = block_size
        self.num_blocks = -(-disk_size // block_size)
        self._bits = bytearray((self.num_blocks + 7) // 8)

    def __len__(self) -> int:
        return self.num_blocks

    def get(self, index: int) -> bool:
        if index < 0 or index >= self.num_blocks:
            return False
        return bool(self._bits[index >> 3] & (0x80 >> (index & 7)))

    def set(self, index: int) -> None:
        if index < 0 or index >= self.num_blocks:
            raise IndexError(f"Block {index} out of range 0..{self.num_blocks - 1}")
        self._bits[index >> 3] |= 0x80 >> (index & 7)

    def set_range(self, offset: int, length: int) -> bool:
        """
        Mark every block touched by a byte range as changed.

        Args:
            offset: First byte of the range
            length: Length of the range in bytes

        Returns:
            False if the range is empty or starts before the disk, True otherwise
        """
        if length <= 0 or offset < 0:
            return False

        start = offset // self.block_size
        end = -(-(offset + length) // self.block_size)
        end = min(end, self.num_blocks)
        if start >= end:
            return True

        self._set_block_range(start, end)
        return True

    def _set_block_range(self, start: int, end: int) -> None:
        # Leading bits up to the first byte boundary
        while start < end and start & 7:
            self._bits[start >> 3] |= 0x80 >> (start & 7)
            start += 1
        # Whole bytes
        first_byte = start >> 3
        last_byte = end >> 3
        if first_byte < last_byte:
            self._bits[first_byte:last_byte] = b"\xff" * (last_byte - first_byte)
            start = last_byte << 3
        # Trailing bits
        while start < end:
            self._bits[start >> 3] |= 0x80 >> (start & 7)
            start += 1

    def apply_ranges(self, ranges: Iterable[Tuple[int, int]]) -> None:
        """Set every ``(offset, length)`` range."""
        for offset, length in ranges:
            self.set_range(offset, length)

    def clear(self) -> None:
        self._bits = bytearray(len(self._bits))

    def is_all_zero(self) -> bool:
        return not any(self._bits)

    def count(self) -> int:
        return sum(bin(byte).count("1") for byte in self._bits)

    def __eq__(self, other):
        if not isinstance(other, ChangedBlockBitmap):
            return NotImplemented
        return self.num_blocks == other.num_blocks and self._bits == other._bits

    def __str__(self):
        return "".join("1" if self.get(i) else "0" for i in range(self.num_blocks))

    # -- serialization ----------------------------------------------------

    def to_bytes(self) -> bytes:
        return str(self.num_blocks).encode("ascii") + b"\0" + bytes(self._bits)

    @classmethod
    def from_bytes(cls, data: bytes, block_size: int = DEFAULT_BLOCK_SIZE) -> "ChangedBlockBitmap":
        """
        Decode the wire form.

        Raises:
            BitmapFormatError: On a missing or invalid header, or a short body
        """
        terminator = data.find(b"\0", 0, MAX_HEADER_LENGTH + 1)
        if terminator < 0:
            raise BitmapFormatError("Bitmap header is not terminated")
        header = data[:terminator]
        if not header.isdigit():
            raise BitmapFormatError(f"Invalid bitmap header: {header!r}")

        num_blocks = int(header)
        num_bytes = (num_blocks + 7) // 8
        body = data[terminator + 1:terminator + 1 + num_bytes]
        if len(body) < num_bytes:
            raise BitmapFormatError(
                f"Bitmap truncated: expected {num_bytes} bytes, got {len(body)}"
            )

        bitmap = cls(num_blocks * block_size, block_size)
        bitmap._bits = bytearray(body)
        if num_blocks & 7:
            # Bits past the last block carry no meaning
            bitmap._bits[-1] &= (0xFF << (8 - (num_blocks & 7))) & 0xFF
        return bitmap

    def write_to(self, stream: BinaryIO) -> None:
        stream.write(self.to_bytes())

    @classmethod
    def read_from(cls, stream: BinaryIO, block_size: int = DEFAULT_BLOCK_SIZE) -> "ChangedBlockBitmap":
        return cls.from_bytes(stream.read(), block_size)

    def save(self, path: Union[str, Path]) -> None:
        with open(path, "wb") as f:
            self.write_to(f)
        logger.debug(f"Saved bitmap with {self.count()}/{self.num_blocks} changed blocks to {path}")

    @classmethod
    def load(cls, path: Union[str, Path], block_size: int = DEFAULT_BLOCK_SIZE) -> "ChangedBlockBitmap":
        with open(path, "rb") as f:
            return cls.read_from(f, block_size)
