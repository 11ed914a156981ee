"""
Layout sections - byte-addressed regions of a GameCube disc image

Every structural piece of a disc image (the disc header, the apploader, the
DOL header and its segments, the file system table and every file) is
described by a Section: a start offset, a length, a name and a type.
"""

from enum import Enum
from typing import NamedTuple, Optional


WRITE_CHUNK_SIZE = 16 * 1024 * 1024

# Layout of an extracted tree: system files live in SYSTEM_DATA_DIR under the root
SYSTEM_DATA_DIR = "&&systemdata"
HEADER_FILE = "ISO.hdr"
FST_FILE = "Game.toc"
APPLOADER_FILE = "Apploader.ldr"
DOL_FILE = "Start.dol"


class GCMError(ValueError):
    """Base class for errors raised on malformed or inconsistent disc data."""


class DecodeError(GCMError):
    """A structure could not be decoded from the image."""


class LayoutError(GCMError):
    """Two regions of a layout overlap."""


class RebuildError(GCMError):
    """The extracted tree cannot be laid out into an image."""


class SectionType(Enum):
    HEADER = "Header"
    APPLOADER = "Apploader"
    DOL_HEADER = "DOL Header"
    DOL_SEGMENT = "DOL Segment"
    FST = "File System Table"
    FILE = "File"

    @property
    def is_unique(self) -> bool:
        """Whether exactly one section of this type exists per image."""
        return self in UNIQUE_SECTION_TYPES


UNIQUE_SECTION_TYPES = frozenset({
    SectionType.HEADER,
    SectionType.APPLOADER,
    SectionType.DOL_HEADER,
    SectionType.FST,
})


class Section(NamedTuple):
    """A contiguous, non-empty byte range of the image."""
    start: int
    length: int
    name: str
    section_type: SectionType

    @property
    def end(self) -> int:
        """Offset of the last byte of the section (inclusive)."""
        return self.start + self.length - 1

    def compare_offset(self, offset: int) -> int:
        """
        Compare the section against an image offset.

        Returns:
            -1 if the section ends before offset, 1 if it starts after offset,
            0 if offset falls within the section
        """
        if self.end < offset:
            return -1
        if self.start > offset:
            return 1
        return 0

    def contains_offset(self, offset: int) -> bool:
        return self.compare_offset(offset) == 0

    def extract(self, source, sink, base_offset: int = 0, chunk_size: int = WRITE_CHUNK_SIZE):
        """
        Copy the bytes of this section from the image to sink.

        Args:
            source: Seekable binary stream holding the image
            sink: Binary stream to write to
            base_offset: Offset of the image inside source
            chunk_size: Maximum number of bytes copied per read
        """
        source.seek(base_offset + self.start)
        copy_range(source, self.length, sink, chunk_size)


def copy_range(source, length: int, sink, chunk_size: int = WRITE_CHUNK_SIZE,
               progress_callback=None):
    """
    Copy exactly length bytes from the current position of source to sink.

    Raises:
        IOError: If source ends before length bytes were read
    """
    remaining = length
    while remaining > 0:
        data = source.read(min(chunk_size, remaining))
        if not data:
            raise IOError(f"Unexpected end of file at offset {source.tell()} "
                          f"({remaining} of {length} bytes left to copy)")
        sink.write(data)
        remaining -= len(data)
        if progress_callback:
            progress_callback(length - remaining, length)


def write_zeros(count: int, sink, zeros: Optional[bytes] = None):
    """
    Write count zero bytes to sink.

    Args:
        count: Number of zero bytes to write
        sink: Binary stream to write to
        zeros: Reusable zero-filled scratch buffer; its length bounds the size
               of each write. Allocated for this call when not given.
    """
    if count < 0:
        raise ValueError(f"Cannot write a negative number of zero bytes ({count})")
    if not zeros:
        zeros = bytes(min(count, WRITE_CHUNK_SIZE))
    view = memoryview(zeros)
    while count > 0:
        n = min(count, len(view))
        sink.write(view[:n])
        count -= n


def read_exact(source, offset: int, size: int, what: str) -> bytes:
    """
    Read size bytes at offset, failing with a DecodeError on a short read.

    Args:
        what: Name of the structure being decoded, used in the error message
    """
    source.seek(offset)
    data = source.read(size)
    if len(data) != size:
        raise DecodeError(f"{what}: expected {size} bytes at offset 0x{offset:x}, "
                          f"got {len(data)}")
    return data


def stream_size(source) -> int:
    """Return the total size of a seekable stream, preserving its position."""
    position = source.tell()
    try:
        return source.seek(0, 2)
    finally:
        source.seek(position)


def align_up(offset: int, align: int) -> int:
    """Round offset up to the next multiple of align."""
    if align <= 0:
        raise ValueError(f"Alignment must be positive, got {align}")
    return (offset + align - 1) // align * align
