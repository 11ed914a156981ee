"""
Disc header (ISO.hdr)

The first 0x2440 bytes of the image: the 0x440-byte disc header (boot.bin)
followed by the 0x2000-byte disc header information block (bi2.bin), which
is kept as raw bytes.
"""

import struct
from pathlib import Path
from typing import NamedTuple

from .apploader import APPLOADER_OFFSET, Apploader
from .dol import DOLHeader
from .sections import (
    APPLOADER_FILE, DOL_FILE, FST_FILE, HEADER_FILE, SYSTEM_DATA_DIR,
    DecodeError, Section, SectionType, align_up, read_exact,
)


GAME_HEADER_SIZE = 0x2440
DVD_MAGIC = 0xC2339F3D
# DOL and FST start on this boundary when system data is regenerated
SYSTEM_ALIGN = 0x100

_BOOT_FORMAT = struct.Struct('>4s2sBBBB18sI992sII24sIIIIIII4s')


class Header(NamedTuple):
    game_code: bytes
    maker_code: bytes
    disc_number: int
    version: int
    audio_streaming: int
    stream_buffer_size: int
    unused_a: bytes
    magic: int
    raw_title: bytes
    debug_monitor_offset: int
    debug_load_address: int
    unused_b: bytes
    dol_offset: int
    fst_offset: int
    fst_size: int
    fst_max_size: int
    user_position: int
    user_length: int
    unknown: int
    unused_c: bytes
    info: bytes

    @classmethod
    def decode(cls, source, offset: int = 0) -> 'Header':
        data = read_exact(source, offset, GAME_HEADER_SIZE, "Disc header")
        return cls.from_bytes(data)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'Header':
        if len(data) < GAME_HEADER_SIZE:
            raise DecodeError(f"Disc header: data too short: {len(data)} < {GAME_HEADER_SIZE} bytes")
        fields = _BOOT_FORMAT.unpack_from(data, 0)
        header = cls(*fields, bytes(data[_BOOT_FORMAT.size:GAME_HEADER_SIZE]))
        if header.magic != DVD_MAGIC:
            raise DecodeError(f"Disc header: invalid DVD magic 0x{header.magic:08x} "
                              f"(expected 0x{DVD_MAGIC:08x})")
        return header

    def encode(self) -> bytes:
        return _BOOT_FORMAT.pack(*self[:-1]) + self.info

    def write(self, sink):
        sink.write(self.encode())

    @property
    def title(self) -> str:
        return self.raw_title.split(b'\x00')[0].decode('shift_jis', errors='replace')

    @property
    def game_id(self) -> str:
        return (self.game_code + self.maker_code).decode('ascii', errors='replace')

    def section(self) -> Section:
        return Section(0, GAME_HEADER_SIZE, HEADER_FILE, SectionType.HEADER)

    @classmethod
    def rebuild(cls, root_path: Path) -> 'Header':
        """
        Regenerate the header of an extracted tree.

        The old ISO.hdr supplies every field that is not derived from the
        other system files; the DOL and FST placement fields are recomputed
        from Apploader.ldr, Start.dol and Game.toc, which must already be
        up to date.
        """
        sys_data_path = Path(root_path) / SYSTEM_DATA_DIR
        with open(sys_data_path / HEADER_FILE, 'rb') as f:
            old = cls.decode(f)
        dol_offset, fst_offset = system_layout_for(root_path)
        fst_size = (sys_data_path / FST_FILE).stat().st_size

        return old._replace(
            dol_offset=dol_offset,
            fst_offset=fst_offset,
            fst_size=fst_size,
            fst_max_size=fst_size,
        )


def system_layout(apploader_size: int, dol_size: int) -> tuple[int, int]:
    """
    Place the DOL and the FST after the apploader.

    Returns:
        Tuple of (dol_offset, fst_offset)
    """
    dol_offset = align_up(APPLOADER_OFFSET + apploader_size, SYSTEM_ALIGN)
    fst_offset = align_up(dol_offset + dol_size, SYSTEM_ALIGN)
    return dol_offset, fst_offset


def system_layout_for(root_path: Path) -> tuple[int, int]:
    """Place the DOL and the FST using the Apploader.ldr and Start.dol of an extracted tree."""
    sys_data_path = Path(root_path) / SYSTEM_DATA_DIR
    with open(sys_data_path / APPLOADER_FILE, 'rb') as f:
        apploader = Apploader.decode(f)
    with open(sys_data_path / DOL_FILE, 'rb') as f:
        dol = DOLHeader.decode(f)
    return system_layout(apploader.total_size, dol.dol_size)
