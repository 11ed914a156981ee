"""Apploader (Apploader.ldr), the secondary bootloader stored right after the disc header."""

import struct
from typing import NamedTuple

from .sections import APPLOADER_FILE, Section, SectionType, read_exact


APPLOADER_OFFSET = 0x2440
APPLOADER_HEADER_SIZE = 0x20

# date (10 chars padded to 16 bytes), entry point, code size, trailer size, padding
_HEADER_FORMAT = struct.Struct('>16sIII4s')


class Apploader(NamedTuple):
    date: bytes
    entry_point: int
    size: int
    trailer_size: int
    padding: bytes
    body: bytes

    @classmethod
    def decode(cls, source, offset: int = 0) -> 'Apploader':
        header = read_exact(source, offset, APPLOADER_HEADER_SIZE, "Apploader header")
        date, entry_point, size, trailer_size, padding = _HEADER_FORMAT.unpack(header)
        body = read_exact(source, offset + APPLOADER_HEADER_SIZE, size + trailer_size,
                          "Apploader code")
        return cls(date, entry_point, size, trailer_size, padding, body)

    def encode(self) -> bytes:
        return _HEADER_FORMAT.pack(self.date, self.entry_point, self.size,
                                   self.trailer_size, self.padding) + self.body

    @property
    def total_size(self) -> int:
        return APPLOADER_HEADER_SIZE + self.size + self.trailer_size

    @property
    def version(self) -> str:
        return self.date.split(b'\x00')[0].decode('ascii', errors='replace')

    def section(self) -> Section:
        return Section(APPLOADER_OFFSET, self.total_size, APPLOADER_FILE, SectionType.APPLOADER)
