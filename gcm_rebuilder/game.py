"""
Game - opening, extracting and rebuilding GameCube disc images

A Game decodes the disc header, apploader, DOL header and FST of an image
once and exposes the offset-ordered layout of every region. The Rebuilder
goes the other way: it streams an extracted tree back into a byte-exact
image, zero-filling the gaps between regions.
"""

import sys
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from .apploader import APPLOADER_OFFSET, Apploader
from .dol import DOLHeader, Segment
from .fst import FILE_ALIGN, FST
from .header import Header
from .sections import (
    APPLOADER_FILE, DOL_FILE, FST_FILE, HEADER_FILE, SYSTEM_DATA_DIR, WRITE_CHUNK_SIZE,
    LayoutError, RebuildError, Section, SectionType, copy_range, write_zeros,
)


# Size of a GameCube mini-DVD image
ROM_SIZE = 0x57058000


class ROMLayout:
    """Every region of an image, sorted by start offset."""

    def __init__(self, sections):
        self.sections: tuple[Section, ...] = tuple(sorted(sections, key=lambda s: s.start))

    def find_offset(self, offset: int) -> Optional[Section]:
        """
        Find the region containing an image offset.

        Returns:
            The containing Section, or None if offset falls before the first
            region, between two regions or after the last one
        """
        # Linear scan that stops as soon as a region starts after offset
        for section in self.sections:
            cmp = section.compare_offset(offset)
            if cmp > 0:
                return None
            if cmp == 0:
                return section
        return None

    def check_overlaps(self):
        """
        Raises:
            LayoutError: If two regions share a byte
        """
        for previous, current in zip(self.sections, self.sections[1:]):
            if current.start <= previous.end:
                raise LayoutError(
                    f"{current.section_type.value} '{current.name}' at 0x{current.start:x} overlaps "
                    f"{previous.section_type.value} '{previous.name}' "
                    f"(0x{previous.start:x}-0x{previous.end:x})")

    def __len__(self) -> int:
        return len(self.sections)

    def __iter__(self) -> Iterator[Section]:
        return iter(self.sections)


class VerboseReporter:
    """Base for classes that print timestamped progress messages to stderr."""

    verbose = False

    def _log(self, message: str):
        """Print a timestamped message to stderr if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp}] {message}", file=sys.stderr)


class Game(VerboseReporter):
    """A decoded GameCube disc image."""

    def __init__(self, header: Header, apploader: Apploader, dol: DOLHeader, fst: FST,
                 base_offset: int = 0, verbose: bool = False,
                 write_chunk_size: int = WRITE_CHUNK_SIZE):
        self.header = header
        self.apploader = apploader
        self.dol = dol
        self.fst = fst
        self.base_offset = base_offset
        self.verbose = verbose
        self.write_chunk_size = write_chunk_size
        self._layout: Optional[ROMLayout] = None

    @classmethod
    def open(cls, iso, offset: int = 0, **kwargs) -> 'Game':
        """
        Decode the system structures of the image stored at offset in iso.

        Args:
            iso: Seekable binary stream
            offset: Offset of the image inside iso
            **kwargs: Passed to the Game constructor (verbose, write_chunk_size)
        """
        header = Header.decode(iso, offset)
        apploader = Apploader.decode(iso, offset + APPLOADER_OFFSET)
        dol = DOLHeader.decode(iso, header.dol_offset, base_offset=offset)
        fst = FST.decode(iso, header.fst_offset, header.fst_size, base_offset=offset)
        return cls(header, apploader, dol, fst, base_offset=offset, **kwargs)

    def unique_sections(self) -> dict[str, Section]:
        """The header, apploader, DOL header and FST sections keyed by system file name."""
        return {
            HEADER_FILE: self.header.section(),
            APPLOADER_FILE: self.apploader.section(),
            DOL_FILE: self.dol.section(),
            FST_FILE: self.fst.section(),
        }

    def rom_layout(self) -> ROMLayout:
        """
        Assemble the layout of the whole image.

        Unused DOL segments and empty files are left out. The layout is
        built once and cached.

        Raises:
            LayoutError: If any two regions overlap
        """
        if self._layout is None:
            sections = list(self.unique_sections().values())
            sections.extend(s.section(self.dol.offset) for s in self.dol.iter_used_segments())
            sections.extend(entry.section(path) for path, entry in self.fst.iter_files()
                            if entry.length > 0)
            layout = ROMLayout(sections)
            layout.check_overlaps()
            self._layout = layout
        return self._layout

    def find_offset(self, offset: int) -> Optional[Section]:
        return self.rom_layout().find_offset(offset)

    def segment_range(self, name: str) -> Optional[tuple[int, int]]:
        """
        Byte range of a DOL segment inside Start.dol.

        Returns:
            Tuple of (start, size), or None if name is not a used segment
        """
        parsed = Segment.parse_segment_name(name)
        if parsed is None:
            return None
        segment = self.dol.find_segment(*parsed)
        if segment is None:
            return None
        return segment.offset, segment.size

    def _system_section(self, name: str) -> Section:
        """Section copied out as a system data file; Start.dol spans the whole executable."""
        if name == DOL_FILE:
            return Section(self.dol.offset, self.dol.dol_size, DOL_FILE, SectionType.DOL_HEADER)
        return self.unique_sections()[name]

    def extract_system_file(self, iso, name: str, sink):
        self._log(f"Writing {name}")
        self._system_section(name).extract(iso, sink, self.base_offset, self.write_chunk_size)

    def extract(self, iso, path: Path, progress_callback=None) -> int:
        """
        Extract the image into a new directory.

        The system files go to path/&&systemdata and the FST tree is mirrored
        under path. Fails if path already exists.

        Args:
            iso: Seekable binary stream holding the image
            path: Directory to create
            progress_callback: Optional callable(files_written, total_files)

        Returns:
            Number of FST files written
        """
        path = Path(path)
        # mkdir without parents/exist_ok so a previous extraction is never overwritten
        path.mkdir()
        sys_data_path = path / SYSTEM_DATA_DIR
        sys_data_path.mkdir()

        for name in (HEADER_FILE, FST_FILE, APPLOADER_FILE, DOL_FILE):
            with open(sys_data_path / name, 'xb') as f:
                self.extract_system_file(iso, name, f)

        return self.extract_files(iso, path, progress_callback)

    def extract_files(self, iso, path: Path, progress_callback=None) -> int:
        self._log(f"Extracting {self.fst.file_count} files")
        count = self.fst.extract_filesystem(path, iso, self.base_offset, progress_callback,
                                            self.write_chunk_size)
        self._log(f"{count}/{self.fst.file_count} files written")
        return count

    def extract_section_with_name(self, name: str, output: Path, iso, progress_callback=None) -> bool:
        """
        Extract a single region addressed by name.

        name is resolved against the system file names ('&&systemdata/ISO.hdr'
        and friends), then against FST paths, then against DOL segment names
        such as '.text0'. A directory is extracted with its whole subtree into
        a new directory at output.

        Returns:
            True if something was extracted, False if name matched nothing
        """
        name = name.replace("\\", "/")
        system_prefix = SYSTEM_DATA_DIR + "/"
        if name.startswith(system_prefix) and name[len(system_prefix):] in self.unique_sections():
            with open(output, 'xb') as f:
                self.extract_system_file(iso, name[len(system_prefix):], f)
            return True

        entry = self.fst.entry_with_name(name)
        if entry is not None:
            if entry.is_directory:
                self._log(f"Writing {name}/")
                output = Path(output)
                output.mkdir()
                count = self.fst.extract_filesystem(output, iso, self.base_offset, progress_callback,
                                                    self.write_chunk_size, directory=entry)
                self._log(f"{count} files written")
                return True
            self._log(f"Writing {name}")
            with open(output, 'xb') as f:
                entry.section(name).extract(iso, f, self.base_offset, self.write_chunk_size)
            return True

        parsed = Segment.parse_segment_name(name)
        if parsed is not None:
            segment = self.dol.find_segment(*parsed)
            if segment is not None:
                self._log(f"Writing {segment.name}")
                with open(output, 'xb') as f:
                    segment.section(self.dol.offset).extract(iso, f, self.base_offset,
                                                             self.write_chunk_size)
                return True
        return False

    def print_info(self, output=None):
        output = output or sys.stdout
        print(f"Title: {self.header.title}", file=output)
        print(f"GameID: {self.header.game_id}", file=output)
        print(f"FST offset: 0x{self.header.fst_offset:x}", file=output)
        print(f"FST size: {self.fst.size:,} bytes", file=output)
        print(f"Main DOL offset: 0x{self.header.dol_offset:x}", file=output)
        print(f"Main DOL entry point: 0x{self.dol.entry_point:x}", file=output)
        print(f"Apploader size: {self.apploader.total_size:,}", file=output)
        print("", file=output)
        print("ROM Layout:", file=output)
        self.print_layout(output)

    def print_layout(self, output=None):
        output = output or sys.stdout
        sections = (self._system_section(name) for name in self.unique_sections())
        for section in sorted(sections, key=lambda s: s.start):
            print(f"0x{section.start:08x}-0x{section.start + section.length:08x}: {section.name}",
                  file=output)


class Rebuilder(VerboseReporter):
    """Rebuilds an image from a tree produced by Game.extract."""

    def __init__(self, root_path: Path, rom_size: int = ROM_SIZE,
                 write_chunk_size: int = WRITE_CHUNK_SIZE, file_align: int = FILE_ALIGN,
                 verbose: bool = False):
        """
        Initialize the rebuilder.

        Args:
            root_path: Root of the extracted tree
            rom_size: Total size of the rebuilt image (default: 0x57058000)
            write_chunk_size: Size of chunks in bytes for copying and zero-filling (default: 16 MiB)
            file_align: Alignment of files when the FST is regenerated (default: 0x8000)
            verbose: Whether to print timestamped progress messages to stderr (default: False)
        """
        self.root_path = Path(root_path)
        self.rom_size = rom_size
        self.write_chunk_size = write_chunk_size
        self.file_align = file_align
        self.verbose = verbose

    @property
    def sys_data_path(self) -> Path:
        return self.root_path / SYSTEM_DATA_DIR

    def rebuild_systemdata(self):
        """
        Regenerate Game.toc and ISO.hdr from the current tree.

        Apploader.ldr and Start.dol are taken as they are. The FST has to be
        written first since the header records its offset and size.
        """
        self._log("Rebuilding file system table")
        fst = FST.rebuild(self.root_path, self.file_align)
        with open(self.sys_data_path / FST_FILE, 'wb') as f:
            fst.write(f)

        self._log("Rebuilding disc header")
        header = Header.rebuild(self.root_path)
        with open(self.sys_data_path / HEADER_FILE, 'wb') as f:
            header.write(f)

    def make_sections_map(self) -> dict[int, Path]:
        """
        Map every image offset that starts a file to the file's path.

        The four system files are always present. Paths are relative to the
        root; the returned dict is ordered by offset.

        Raises:
            RebuildError: If two files claim the same offset
        """
        with open(self.sys_data_path / HEADER_FILE, 'rb') as f:
            header = Header.decode(f)
        with open(self.sys_data_path / FST_FILE, 'rb') as f:
            fst = FST.decode(f)

        files = {
            0: Path(SYSTEM_DATA_DIR) / HEADER_FILE,
        }

        def insert(offset: int, path: Path):
            if offset in files:
                raise RebuildError(f"'{path}' and '{files[offset]}' both start at offset 0x{offset:x}")
            files[offset] = path

        insert(APPLOADER_OFFSET, Path(SYSTEM_DATA_DIR) / APPLOADER_FILE)
        insert(header.dol_offset, Path(SYSTEM_DATA_DIR) / DOL_FILE)
        insert(header.fst_offset, Path(SYSTEM_DATA_DIR) / FST_FILE)
        for path, entry in fst.iter_files():
            # empty files occupy no bytes and may share an offset with the next file
            if entry.length > 0:
                insert(entry.file_offset, Path(path))

        return dict(sorted(files.items()))

    def rebuild(self, output, rebuild_files: bool = False, progress_callback=None) -> int:
        """
        Write the rebuilt image to output.

        Args:
            output: Binary stream to write the image to
            rebuild_files: Regenerate Game.toc and ISO.hdr from the tree first
            progress_callback: Optional callable(files_written, total_files)

        Returns:
            Number of bytes written (always rom_size)

        Raises:
            RebuildError: If a file would overlap the previous one or the
                          image would exceed rom_size
            FileNotFoundError: If a system file or an FST file is missing
        """
        if rebuild_files:
            self.rebuild_systemdata()

        files = self.make_sections_map()
        total_files = len(files)
        self._log(f"Rebuilding image from {total_files} files")

        zeros = bytes(min(self.write_chunk_size, self.rom_size))
        bytes_written = 0
        previous = None
        for i, (offset, filename) in enumerate(files.items()):
            if offset < bytes_written:
                raise RebuildError(f"'{filename}' starts at 0x{offset:x}, before the end of "
                                   f"'{previous}' at 0x{bytes_written:x}")
            write_zeros(offset - bytes_written, output, zeros)
            bytes_written = offset

            file_path = self.root_path / filename
            size = file_path.stat().st_size
            with open(file_path, 'rb') as f:
                copy_range(f, size, output, self.write_chunk_size)
            bytes_written += size
            previous = filename

            if progress_callback:
                progress_callback(i + 1, total_files)

        if bytes_written > self.rom_size:
            raise RebuildError(f"Rebuilt image is 0x{bytes_written:x} bytes, larger than the "
                               f"image size 0x{self.rom_size:x}")
        write_zeros(self.rom_size - bytes_written, output, zeros)
        self._log(f"Wrote {self.rom_size:,} bytes")
        return self.rom_size
