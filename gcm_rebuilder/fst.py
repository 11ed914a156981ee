"""
File system table (Game.toc)

The FST is a flat array of 12-byte entries followed by a string table of
NUL-terminated names. Entry 0 is the root directory. Each entry is either:

- a file: flag 0, name offset, absolute data offset, length
- a directory: flag 1, name offset, parent index, next index

A directory's subtree occupies the entries from its own index + 1 up to (but
not including) its next index, so the array is a depth-first listing of the
whole tree. Entries refer to each other only by index.
"""

import os
import struct
from pathlib import Path
from typing import Iterator, NamedTuple, Optional, Union

from .header import system_layout_for
from .sections import (
    FST_FILE, SYSTEM_DATA_DIR, WRITE_CHUNK_SIZE, DecodeError, RebuildError, Section, SectionType,
    align_up, copy_range, read_exact, stream_size,
)


FST_ENTRY_SIZE = 12
NAME_ENCODING = 'shift_jis'
# Files are placed on this boundary when the FST is regenerated
FILE_ALIGN = 0x8000

_ENTRY_FORMAT = struct.Struct('>III')


class FileEntry(NamedTuple):
    index: int
    name_offset: int
    name: str
    file_offset: int
    length: int

    is_directory = False

    def encode(self) -> bytes:
        return _ENTRY_FORMAT.pack(self.name_offset, self.file_offset, self.length)

    def section(self, path: str) -> Section:
        return Section(self.file_offset, self.length, path, SectionType.FILE)


class DirectoryEntry(NamedTuple):
    index: int
    name_offset: int
    name: str
    parent_index: int
    next_index: int

    is_directory = True

    def encode(self) -> bytes:
        return _ENTRY_FORMAT.pack(1 << 24 | self.name_offset, self.parent_index, self.next_index)

    def iter_contents(self, entries) -> Iterator['Entry']:
        """
        Yield the direct children of this directory in stored order.

        Child directories are yielded once; their subtrees are skipped using
        their next index.
        """
        i = self.index + 1
        while i < self.next_index:
            entry = entries[i]
            yield entry
            i = entry.next_index if entry.is_directory else i + 1


Entry = Union[FileEntry, DirectoryEntry]


class FST(NamedTuple):
    offset: int
    entries: tuple[Entry, ...]
    string_table: bytes

    @classmethod
    def decode(cls, source, offset: int = 0, size: Optional[int] = None,
               base_offset: int = 0) -> 'FST':
        """
        Decode the FST at offset.

        Args:
            source: Seekable binary stream
            offset: Image offset of the FST
            size: Total size of the FST in bytes; when None the FST extends to
                  the end of source (e.g. an extracted Game.toc)
            base_offset: Offset of the image inside source

        Raises:
            DecodeError: If the tables are truncated, an entry has an invalid
                         flag or name, or the directory tree is malformed
        """
        start = base_offset + offset
        root_data = read_exact(source, start, FST_ENTRY_SIZE, "FST root entry")
        flags, _, count = _ENTRY_FORMAT.unpack(root_data)
        if flags >> 24 != 1:
            raise DecodeError("FST: root entry is not a directory")
        if count < 1:
            raise DecodeError(f"FST: invalid entry count {count}")

        table_size = count * FST_ENTRY_SIZE
        if size is None:
            size = stream_size(source) - start
        if size < table_size:
            raise DecodeError(f"FST: {count} entries need 0x{table_size:x} bytes, "
                              f"but the FST is only 0x{size:x} bytes")
        table = read_exact(source, start, table_size, "FST entries")
        string_table = read_exact(source, start + table_size, size - table_size, "FST string table")

        entries = []
        for index, (word, a, b) in enumerate(_ENTRY_FORMAT.iter_unpack(table)):
            flag, name_offset = word >> 24, word & 0xFFFFFF
            if flag not in (0, 1):
                raise DecodeError(f"FST: entry {index} has invalid flag 0x{flag:02x}")
            name = "" if index == 0 else _read_name(string_table, name_offset, index)
            if flag:
                entries.append(DirectoryEntry(index, name_offset, name, a, b))
            else:
                entries.append(FileEntry(index, name_offset, name, a, b))

        fst = cls(offset, tuple(entries), string_table)
        visited = _check_tree(fst.entries)
        if visited != fst.file_count:
            raise DecodeError(f"FST: traversal reached {visited} of {fst.file_count} files")
        return fst

    def encode(self) -> bytes:
        return b"".join(entry.encode() for entry in self.entries) + self.string_table

    def write(self, sink):
        sink.write(self.encode())

    @property
    def root(self) -> DirectoryEntry:
        return self.entries[0]

    @property
    def size(self) -> int:
        return len(self.entries) * FST_ENTRY_SIZE + len(self.string_table)

    @property
    def file_count(self) -> int:
        return sum(1 for entry in self.entries if not entry.is_directory)

    def section(self) -> Section:
        return Section(self.offset, self.size, FST_FILE, SectionType.FST)

    def iter_tree(self, directory: Optional[DirectoryEntry] = None,
                  prefix: str = "") -> Iterator[tuple[str, Entry]]:
        """
        Walk the tree depth-first in stored order.

        Yields:
            Tuples of (path, entry) where path is relative to the root and
            uses '/' as separator
        """
        if directory is None:
            directory = self.root
        # one (children, prefix) pair per open directory
        stack = [(directory.iter_contents(self.entries), prefix)]
        while stack:
            contents, prefix = stack[-1]
            entry = next(contents, None)
            if entry is None:
                stack.pop()
                continue
            path = prefix + entry.name
            yield path, entry
            if entry.is_directory:
                stack.append((entry.iter_contents(self.entries), path + "/"))

    def iter_files(self) -> Iterator[tuple[str, FileEntry]]:
        return ((path, entry) for path, entry in self.iter_tree() if not entry.is_directory)

    def entry_with_name(self, path: str) -> Optional[Entry]:
        """Find the entry at a '/'-separated path relative to the root."""
        parts = [part for part in path.split("/") if part]
        if not parts:
            return None
        directory = self.root
        for i, part in enumerate(parts):
            match = next((e for e in directory.iter_contents(self.entries) if e.name == part), None)
            if match is None:
                return None
            if i == len(parts) - 1:
                return match
            if not match.is_directory:
                return None
            directory = match
        return None

    def extract_filesystem(self, root_path: Path, source, base_offset: int = 0,
                           progress_callback=None, chunk_size: int = WRITE_CHUNK_SIZE,
                           directory: Optional[DirectoryEntry] = None) -> int:
        """
        Write every directory and file below directory (default: the root)
        under root_path.

        Files and directories are created exclusively, so extraction fails
        on the first path that already exists.

        Args:
            root_path: Existing directory to extract into
            source: Seekable binary stream holding the image
            base_offset: Offset of the image inside source
            progress_callback: Optional callable(files_written, total_files)
            directory: Directory entry whose contents are extracted

        Returns:
            Number of files written
        """
        root_path = Path(root_path)
        total = sum(1 for _, entry in self.iter_tree(directory) if not entry.is_directory)
        written = 0
        for path, entry in self.iter_tree(directory):
            target = root_path / path
            if entry.is_directory:
                target.mkdir()
                continue
            with open(target, 'xb') as f:
                source.seek(base_offset + entry.file_offset)
                copy_range(source, entry.length, f, chunk_size)
            written += 1
            if progress_callback:
                progress_callback(written, total)
        return written

    @classmethod
    def rebuild(cls, root_path: Path, file_align: int = FILE_ALIGN) -> 'FST':
        """
        Build a new FST from an extracted tree.

        Children are ordered case-insensitively by name and the system data
        directory is skipped. Files are laid out in FST order after the FST
        itself, each starting on a file_align boundary. Apploader.ldr and
        Start.dol must exist, since they decide where the FST goes.

        Raises:
            RebuildError: If a name cannot be stored in the FST encoding
        """
        root_path = Path(root_path)
        _, fst_offset = system_layout_for(root_path)

        # (name, encoded name, is_directory, parent_index or file size, next_index)
        nodes: list[list] = [["", b"", True, 0, 0]]

        # one (remaining children, directory index) pair per open directory
        stack = [(iter(_sorted_children(root_path)), 0)]
        while stack:
            children, dir_index = stack[-1]
            child = next(children, None)
            if child is None:
                nodes[dir_index][4] = len(nodes)
                stack.pop()
                continue
            if dir_index == 0 and child.name == SYSTEM_DATA_DIR:
                continue
            encoded = _encode_name(child, root_path)
            if child.is_dir():
                stack.append((iter(_sorted_children(child)), len(nodes)))
                nodes.append([child.name, encoded, True, dir_index, 0])
            else:
                nodes.append([child.name, encoded, False, child.stat().st_size, 0])

        string_table = bytearray()
        name_offsets = [0]
        for node in nodes[1:]:
            name_offsets.append(len(string_table))
            string_table += node[1] + b"\x00"

        fst_size = len(nodes) * FST_ENTRY_SIZE + len(string_table)
        cursor = align_up(fst_offset + fst_size, file_align)

        entries = []
        for index, (name, _, is_directory, value, next_index) in enumerate(nodes):
            if is_directory:
                entries.append(DirectoryEntry(index, name_offsets[index], name, value, next_index))
            else:
                entries.append(FileEntry(index, name_offsets[index], name, cursor, value))
                cursor = align_up(cursor + value, file_align)
        return cls(fst_offset, tuple(entries), bytes(string_table))


def _sorted_children(path: Path) -> list[Path]:
    return sorted(path.iterdir(), key=lambda p: (p.name.upper(), p.name))


def _encode_name(path: Path, root_path: Path) -> bytes:
    try:
        return path.name.encode(NAME_ENCODING)
    except UnicodeEncodeError as e:
        raise RebuildError(f"FST: cannot encode the name of '{path.relative_to(root_path)}' "
                           f"as {NAME_ENCODING}: {e}") from e


def _read_name(string_table: bytes, name_offset: int, index: int) -> str:
    end = string_table.find(b"\x00", name_offset)
    if name_offset >= len(string_table) or end < 0:
        raise DecodeError(f"FST: entry {index} name offset 0x{name_offset:x} is outside the string table")
    try:
        name = string_table[name_offset:end].decode(NAME_ENCODING)
    except UnicodeDecodeError as e:
        raise DecodeError(f"FST: entry {index} has an undecodable name: {e}") from e
    if name in ("", ".", "..") or "/" in name or os.sep in name:
        raise DecodeError(f"FST: entry {index} has an invalid name {name!r}")
    return name


def _check_tree(entries) -> int:
    """
    Validate the directory tree and return the number of files reached from the root.

    Every directory's next index must lie in (index, next index of the
    enclosing directory] and its parent index must name the enclosing
    directory.
    """
    root = entries[0]
    if not 0 < root.next_index <= len(entries):
        raise DecodeError(f"FST: root entry has next index {root.next_index} "
                          f"outside (0, {len(entries)}]")
    files = 0
    open_directories = [root]
    i = 1
    while open_directories:
        directory = open_directories[-1]
        if i == directory.next_index:
            open_directories.pop()
            continue
        entry = entries[i]
        if entry.is_directory:
            if entry.parent_index != directory.index:
                raise DecodeError(f"FST: directory entry {entry.index} has parent index "
                                  f"{entry.parent_index}, expected {directory.index}")
            if not entry.index < entry.next_index <= directory.next_index:
                raise DecodeError(f"FST: directory entry {entry.index} has next index "
                                  f"{entry.next_index} outside ({entry.index}, {directory.next_index}]")
            open_directories.append(entry)
        else:
            files += 1
        i += 1
    return files
