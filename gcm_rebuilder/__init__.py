"""
gcm_rebuilder - layout engine for GameCube disc images

Decodes the disc header, apploader, DOL executable and file system table of
an image, lays every region out by offset, extracts the image to a directory
tree and rebuilds a byte-identical image from that tree.
"""

from .apploader import APPLOADER_OFFSET, Apploader
from .dol import DOLHeader, Segment
from .fst import FST, DirectoryEntry, FileEntry
from .game import ROM_SIZE, Game, Rebuilder, ROMLayout
from .header import GAME_HEADER_SIZE, Header
from .sections import (
    SYSTEM_DATA_DIR, DecodeError, GCMError, LayoutError, RebuildError, Section, SectionType,
)

__all__ = [
    'APPLOADER_OFFSET', 'Apploader', 'DOLHeader', 'Segment', 'FST', 'DirectoryEntry',
    'FileEntry', 'ROM_SIZE', 'Game', 'Rebuilder', 'ROMLayout', 'GAME_HEADER_SIZE', 'Header',
    'SYSTEM_DATA_DIR', 'DecodeError', 'GCMError', 'LayoutError', 'RebuildError', 'Section',
    'SectionType',
]
