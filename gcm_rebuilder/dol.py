"""
DOL executable header (Start.dol)

The 0x100-byte DOL header describes up to 7 text and 11 data segments by
file-relative offset, load address and size, followed by the BSS range and
the entry point. A segment with a size of zero is unused.
"""

import re
import struct
from typing import Iterator, NamedTuple, Optional

from .sections import DOL_FILE, DecodeError, Section, SectionType, read_exact, stream_size


DOL_HEADER_SIZE = 0x100
TEXT_SEGMENT_COUNT = 7
DATA_SEGMENT_COUNT = 11
SEGMENT_COUNT = TEXT_SEGMENT_COUNT + DATA_SEGMENT_COUNT

# offsets[18], addresses[18], sizes[18], bss address, bss size, entry point, padding
_HEADER_FORMAT = struct.Struct(f'>{SEGMENT_COUNT}I{SEGMENT_COUNT}I{SEGMENT_COUNT}IIII28s')

_SEGMENT_NAME_PATTERN = re.compile(r'^\.(text|data)(\d+)$')


class Segment(NamedTuple):
    kind: str  # 'text' or 'data'
    index: int
    offset: int
    address: int
    size: int

    @property
    def name(self) -> str:
        return f".{self.kind}{self.index}"

    @property
    def is_used(self) -> bool:
        return self.size != 0

    def section(self, dol_offset: int) -> Section:
        return Section(dol_offset + self.offset, self.size, self.name, SectionType.DOL_SEGMENT)

    @staticmethod
    def parse_segment_name(name: str) -> Optional[tuple[str, int]]:
        """
        Parse a segment name such as '.text0' or '.data10'.

        Returns:
            Tuple of (kind, index), or None if name is not a segment name
        """
        match = _SEGMENT_NAME_PATTERN.match(name)
        if match is None:
            return None
        return match.group(1), int(match.group(2))


class DOLHeader(NamedTuple):
    offset: int
    text_segments: tuple[Segment, ...]
    data_segments: tuple[Segment, ...]
    bss_address: int
    bss_size: int
    entry_point: int
    padding: bytes

    @classmethod
    def decode(cls, source, offset: int = 0, base_offset: int = 0) -> 'DOLHeader':
        """
        Decode the DOL header at offset.

        Args:
            source: Seekable binary stream
            offset: Image offset of the DOL header; segment offsets are relative to it
            base_offset: Offset of the image inside source

        Raises:
            DecodeError: If the header is truncated, a segment overlaps the
                         header, or a segment extends past the end of source
        """
        data = read_exact(source, base_offset + offset, DOL_HEADER_SIZE, "DOL header")
        values = _HEADER_FORMAT.unpack(data)
        offsets = values[0:SEGMENT_COUNT]
        addresses = values[SEGMENT_COUNT:2 * SEGMENT_COUNT]
        sizes = values[2 * SEGMENT_COUNT:3 * SEGMENT_COUNT]
        bss_address, bss_size, entry_point, padding = values[3 * SEGMENT_COUNT:]

        segments = []
        for i in range(SEGMENT_COUNT):
            if i < TEXT_SEGMENT_COUNT:
                kind, index = 'text', i
            else:
                kind, index = 'data', i - TEXT_SEGMENT_COUNT
            segments.append(Segment(kind, index, offsets[i], addresses[i], sizes[i]))

        dol = cls(offset, tuple(segments[:TEXT_SEGMENT_COUNT]), tuple(segments[TEXT_SEGMENT_COUNT:]),
                  bss_address, bss_size, entry_point, padding)

        available = stream_size(source) - base_offset - offset
        for segment in dol.iter_used_segments():
            if segment.offset < DOL_HEADER_SIZE:
                raise DecodeError(f"DOL header: segment {segment.name} at 0x{segment.offset:x} "
                                  f"overlaps the header")
            if segment.offset + segment.size > available:
                raise DecodeError(f"DOL header: segment {segment.name} "
                                  f"(0x{segment.offset:x}+0x{segment.size:x}) extends past the "
                                  f"end of the image")
        return dol

    def encode(self) -> bytes:
        segments = self.text_segments + self.data_segments
        return _HEADER_FORMAT.pack(
            *(s.offset for s in segments),
            *(s.address for s in segments),
            *(s.size for s in segments),
            self.bss_address, self.bss_size, self.entry_point, self.padding,
        )

    def iter_segments(self) -> Iterator[Segment]:
        yield from self.text_segments
        yield from self.data_segments

    def iter_used_segments(self) -> Iterator[Segment]:
        return (s for s in self.iter_segments() if s.is_used)

    def find_segment(self, kind: str, index: int) -> Optional[Segment]:
        """Return the used segment of the given kind and index, if any."""
        segments = self.text_segments if kind == 'text' else self.data_segments
        if 0 <= index < len(segments) and segments[index].is_used:
            return segments[index]
        return None

    @property
    def dol_size(self) -> int:
        """Size of the whole executable: the header plus the furthest segment."""
        return max([DOL_HEADER_SIZE] + [s.offset + s.size for s in self.iter_used_segments()])

    def section(self) -> Section:
        return Section(self.offset, DOL_HEADER_SIZE, DOL_FILE, SectionType.DOL_HEADER)
