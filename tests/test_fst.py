#!/usr/bin/env python3
"""
Tests for the file system table: decoding, traversal, extraction and rebuilding.
"""

import io
import struct
import sys
import tempfile
import unittest
from pathlib import Path

# Add parent directory to path to import the package
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from gcm_rebuilder.fst import FST, FST_ENTRY_SIZE, DirectoryEntry, FileEntry
from gcm_rebuilder.sections import SYSTEM_DATA_DIR, DecodeError, RebuildError, SectionType
from disc_fixtures import (
    NESTED_CONTENTS, NESTED_TREE, make_apploader, make_fst, nested_dol, nested_image,
)


def corrupt(data: bytes, index: int, field: int, value: int) -> bytes:
    """Overwrite one 32-bit field (0, 1 or 2) of entry index."""
    data = bytearray(data)
    struct.pack_into('>I', data, index * FST_ENTRY_SIZE + field * 4, value)
    return bytes(data)


def deep_fst(depth: int) -> bytes:
    """A chain of depth directories named 'd' holding one file 'f' at the bottom."""
    count = depth + 2
    entries = [struct.pack('>III', 1 << 24, 0, count)]
    for index in range(1, depth + 1):
        entries.append(struct.pack('>III', 1 << 24, index - 1, count))
    entries.append(struct.pack('>III', 2, 0x8000, 4))
    return b"".join(entries) + b"d\x00f\x00"


class TestFSTDecode(unittest.TestCase):
    """Tests for FST.decode and the tree traversal."""

    def setUp(self):
        self.data = make_fst(NESTED_TREE)
        self.fst = FST.decode(io.BytesIO(self.data))

    def test_entries(self):
        self.assertEqual(len(self.fst.entries), 8)
        self.assertEqual(self.fst.file_count, 5)
        self.assertEqual(self.fst.root.next_index, 8)
        self.assertEqual(self.fst.size, len(self.data))
        self.assertIsInstance(self.fst.entries[3], DirectoryEntry)
        self.assertEqual(self.fst.entries[3].name, "sub")
        self.assertEqual(self.fst.entries[3].next_index, 7)
        self.assertEqual(self.fst.entries[5].parent_index, 3)

    def test_traversal_order(self):
        paths = [path for path, _ in self.fst.iter_tree()]
        self.assertEqual(paths, [
            "b.dat", "empty.txt", "sub", "sub/c.bin", "sub/deep", "sub/deep/d.bin", "z.bin",
        ])

    def test_iter_files(self):
        files = [(path, entry.file_offset, entry.length) for path, entry in self.fst.iter_files()]
        self.assertEqual(files, [
            ("b.dat", 0x8000, 0x20),
            ("empty.txt", 0x8800, 0),
            ("sub/c.bin", 0x8800, 0x40),
            ("sub/deep/d.bin", 0x9000, 0x30),
            ("z.bin", 0x9800, 0x10),
        ])

    def test_every_file_visited_once(self):
        indices = [entry.index for _, entry in self.fst.iter_files()]
        self.assertEqual(len(indices), len(set(indices)))
        self.assertEqual(len(indices), self.fst.file_count)

    def test_direct_children(self):
        names = [entry.name for entry in self.fst.root.iter_contents(self.fst.entries)]
        self.assertEqual(names, ["b.dat", "empty.txt", "sub", "z.bin"])

    def test_encode_is_byte_exact(self):
        self.assertEqual(self.fst.encode(), self.data)

    def test_decode_from_image(self):
        fst = FST.decode(io.BytesIO(nested_image()), 0x5000, len(self.data))
        self.assertEqual(fst.entries, self.fst.entries)
        section = fst.section()
        self.assertEqual((section.start, section.length), (0x5000, len(self.data)))
        self.assertEqual(section.section_type, SectionType.FST)

    def test_decode_with_base_offset(self):
        source = io.BytesIO(b"\x00" * 0x100 + nested_image())
        fst = FST.decode(source, 0x5000, len(self.data), base_offset=0x100)
        self.assertEqual(fst.offset, 0x5000)
        self.assertEqual(fst.entries, self.fst.entries)

    def test_entry_with_name(self):
        entry = self.fst.entry_with_name("sub/deep/d.bin")
        self.assertIsInstance(entry, FileEntry)
        self.assertEqual(entry.file_offset, 0x9000)
        self.assertTrue(self.fst.entry_with_name("sub").is_directory)
        self.assertIsNone(self.fst.entry_with_name("missing"))
        self.assertIsNone(self.fst.entry_with_name("b.dat/x"))
        self.assertIsNone(self.fst.entry_with_name(""))

    def test_next_index_past_parent_raises(self):
        with self.assertRaises(DecodeError) as context:
            FST.decode(io.BytesIO(corrupt(self.data, 3, 2, 9)))
        self.assertIn("next index", str(context.exception))

    def test_next_index_not_after_entry_raises(self):
        with self.assertRaises(DecodeError):
            FST.decode(io.BytesIO(corrupt(self.data, 3, 2, 3)))

    def test_wrong_parent_raises(self):
        with self.assertRaises(DecodeError) as context:
            FST.decode(io.BytesIO(corrupt(self.data, 5, 1, 0)))
        self.assertIn("parent index", str(context.exception))

    def test_invalid_flag_raises(self):
        with self.assertRaises(DecodeError) as context:
            FST.decode(io.BytesIO(corrupt(self.data, 1, 0, 2 << 24)))
        self.assertIn("invalid flag", str(context.exception))

    def test_name_outside_string_table_raises(self):
        with self.assertRaises(DecodeError):
            FST.decode(io.BytesIO(corrupt(self.data, 1, 0, 0xFFFF)))

    def test_root_must_be_directory(self):
        with self.assertRaises(DecodeError):
            FST.decode(io.BytesIO(corrupt(self.data, 0, 0, 0)))

    def test_truncated_table_raises(self):
        with self.assertRaises(DecodeError):
            FST.decode(io.BytesIO(self.data[:5 * FST_ENTRY_SIZE]))

    def test_deeply_nested_tree(self):
        depth = sys.getrecursionlimit() + 200
        data = deep_fst(depth)
        fst = FST.decode(io.BytesIO(data))

        self.assertEqual(fst.file_count, 1)
        files = list(fst.iter_files())
        self.assertEqual(len(files), 1)
        path, entry = files[0]
        self.assertEqual(path, "d/" * depth + "f")
        self.assertEqual(entry.file_offset, 0x8000)
        self.assertEqual(fst.encode(), data)
        self.assertIs(fst.entry_with_name(path), entry)

    def test_deeply_nested_tree_with_bad_index_raises(self):
        depth = sys.getrecursionlimit() + 200
        # innermost directory claims the whole table, past its parent's subtree
        data = corrupt(deep_fst(depth), depth, 2, depth + 3)
        with self.assertRaises(DecodeError):
            FST.decode(io.BytesIO(data))

    def test_unsafe_name_raises(self):
        data = make_fst([('file', '..', 0x8000, 1)])
        with self.assertRaises(DecodeError):
            FST.decode(io.BytesIO(data))


class TestFSTExtract(unittest.TestCase):
    """Tests for FST.extract_filesystem."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.fst = FST.decode(io.BytesIO(make_fst(NESTED_TREE)))

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_extract_writes_tree(self):
        calls = []
        count = self.fst.extract_filesystem(self.root, io.BytesIO(nested_image()),
                                            progress_callback=lambda d, t: calls.append((d, t)))

        self.assertEqual(count, 5)
        self.assertEqual(calls[-1], (5, 5))
        self.assertEqual((self.root / "b.dat").read_bytes(), NESTED_CONTENTS[0x8000])
        self.assertEqual((self.root / "empty.txt").read_bytes(), b"")
        self.assertEqual((self.root / "sub" / "c.bin").read_bytes(), NESTED_CONTENTS[0x8800])
        self.assertEqual((self.root / "sub" / "deep" / "d.bin").read_bytes(), NESTED_CONTENTS[0x9000])
        self.assertEqual((self.root / "z.bin").read_bytes(), NESTED_CONTENTS[0x9800])

    def test_extract_refuses_existing_files(self):
        (self.root / "b.dat").write_bytes(b"keep")
        with self.assertRaises(FileExistsError):
            self.fst.extract_filesystem(self.root, io.BytesIO(nested_image()))
        self.assertEqual((self.root / "b.dat").read_bytes(), b"keep")


    def test_extract_subtree(self):
        sub = self.fst.entry_with_name("sub")
        count = self.fst.extract_filesystem(self.root, io.BytesIO(nested_image()), directory=sub)

        self.assertEqual(count, 2)
        self.assertEqual(sorted(p.name for p in self.root.iterdir()), ["c.bin", "deep"])
        self.assertEqual((self.root / "deep" / "d.bin").read_bytes(), NESTED_CONTENTS[0x9000])

class TestFSTRebuild(unittest.TestCase):
    """Tests for FST.rebuild from an extracted tree."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        sys_data = self.root / SYSTEM_DATA_DIR
        sys_data.mkdir()
        # 0x200-byte apploader and 0x280-byte DOL: DOL at 0x2700, FST at 0x2A00
        (sys_data / "Apploader.ldr").write_bytes(make_apploader(0x1C0, trailer_size=0x20))
        (sys_data / "Start.dol").write_bytes(nested_dol())
        (sys_data / "ISO.hdr").write_bytes(b"ignored")

        (self.root / "B.txt").write_bytes(b"12345")
        (self.root / "a.bin").write_bytes(b"abc")
        (self.root / "c").mkdir()
        (self.root / "c" / "y").write_bytes(b"seven!!")
        (self.root / "c" / "x").write_bytes(b"")

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_case_insensitive_order_and_system_data_skipped(self):
        fst = FST.rebuild(self.root, file_align=0x20)
        paths = [path for path, _ in fst.iter_tree()]
        self.assertEqual(paths, ["a.bin", "B.txt", "c", "c/x", "c/y"])
        self.assertIsNone(fst.entry_with_name(SYSTEM_DATA_DIR))

    def test_placement(self):
        fst = FST.rebuild(self.root, file_align=0x20)
        self.assertEqual(fst.offset, 0x2A00)
        self.assertEqual(fst.size, 6 * FST_ENTRY_SIZE + len(b"a.bin\0B.txt\0c\0x\0y\0"))

        offsets = {path: (entry.file_offset, entry.length) for path, entry in fst.iter_files()}
        self.assertEqual(offsets, {
            "a.bin": (0x2A60, 3),
            "B.txt": (0x2A80, 5),
            "c/x": (0x2AA0, 0),
            "c/y": (0x2AA0, 7),
        })

    def test_default_alignment(self):
        fst = FST.rebuild(self.root)
        first = next(entry for _, entry in fst.iter_files())
        self.assertEqual(first.file_offset, 0x8000)
        for _, entry in fst.iter_files():
            self.assertEqual(entry.file_offset % 0x8000, 0)

    def test_rebuilt_table_decodes(self):
        fst = FST.rebuild(self.root, file_align=0x20)
        decoded = FST.decode(io.BytesIO(fst.encode()))
        self.assertEqual(decoded.entries, fst.entries)
        self.assertEqual(decoded.string_table, fst.string_table)

    def test_nested_directory_indices(self):
        (self.root / "c" / "e").mkdir()
        (self.root / "c" / "e" / "z").write_bytes(b"zz")
        fst = FST.rebuild(self.root, file_align=0x20)

        self.assertEqual([path for path, _ in fst.iter_tree()],
                         ["a.bin", "B.txt", "c", "c/e", "c/e/z", "c/x", "c/y"])
        c, e = fst.entries[3], fst.entries[4]
        self.assertEqual((c.parent_index, c.next_index), (0, 8))
        self.assertEqual((e.parent_index, e.next_index), (3, 6))
        self.assertEqual(fst.root.next_index, 8)

    def test_unencodable_name_raises(self):
        (self.root / "c" / "smile\U0001F600.bin").write_bytes(b"x")
        with self.assertRaises(RebuildError) as context:
            FST.rebuild(self.root)
        self.assertIn("smile", str(context.exception))

    def test_missing_dol_raises(self):
        (self.root / SYSTEM_DATA_DIR / "Start.dol").unlink()
        with self.assertRaises(FileNotFoundError):
            FST.rebuild(self.root)


if __name__ == '__main__':
    unittest.main()
