"""
Image verification - digests and block-level comparison of two images

Used to check that a rebuilt image matches the original byte for byte, and
if it does not, where the two differ.
"""

import hashlib
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import NamedTuple

import mmh3


class ImageInfo(NamedTuple):
    """Size and digests of an image file."""
    size: int
    md5: str
    sha256: str


def image_info(image_file: Path, capture_md5: bool = True, capture_sha256: bool = True) -> ImageInfo:
    """
    Gather the size and (optionally) the MD5 and SHA256 digests of an image.

    The digests are computed in parallel; a digest that was not requested is
    an empty string.
    """
    def digest(algorithm: str) -> str:
        with open(image_file, 'rb') as f:
            return hashlib.file_digest(f, algorithm).hexdigest()

    algorithms = [name for name, wanted in (('md5', capture_md5), ('sha256', capture_sha256)) if wanted]
    results = {}
    if algorithms:
        with ThreadPoolExecutor(max_workers=len(algorithms)) as executor:
            futures = {name: executor.submit(digest, name) for name in algorithms}
            results = {name: future.result() for name, future in futures.items()}

    return ImageInfo(
        size=Path(image_file).stat().st_size,
        md5=results.get('md5', ""),
        sha256=results.get('sha256', ""),
    )


def block_hashes(file_path: Path, block_size: int = 4096) -> list[int]:
    """
    Generate an array of murmur hashes for each block in a file.

    Args:
        file_path: Path to the file to hash
        block_size: Size of blocks in bytes (default: 4096)

    Returns:
        List of unsigned 32-bit hash values, one per block
    """
    hashes = []
    with open(file_path, 'rb') as f:
        while True:
            block = f.read(block_size)
            if not block:
                break
            hashes.append(mmh3.hash(block, signed=False))
    return hashes


def compare_images(first: Path, second: Path, block_size: int = 4096,
                   exact: bool = False) -> list[tuple[int, int]]:
    """
    Find the byte ranges where two images differ.

    Blocks are compared by 32-bit MurmurHash3; blocks whose hashes differ are
    then compared byte by byte so the reported ranges are exact. Blocks with
    equal hashes are taken to be equal unless exact is set, in which case
    every block is compared byte by byte. Adjacent differences are merged. If
    one image is longer, its tail is reported as a difference.

    Returns:
        List of (start_offset, end_offset) tuples (end exclusive), sorted
    """
    first_hashes = block_hashes(first, block_size)
    second_hashes = block_hashes(second, block_size)
    first_size = Path(first).stat().st_size
    second_size = Path(second).stat().st_size

    ranges: list[tuple[int, int]] = []

    def add(start: int, end: int):
        if ranges and ranges[-1][1] == start:
            ranges[-1] = (ranges[-1][0], end)
        else:
            ranges.append((start, end))

    with open(first, 'rb') as f1, open(second, 'rb') as f2:
        for block, (h1, h2) in enumerate(zip(first_hashes, second_hashes)):
            if h1 == h2 and not exact:
                continue
            offset = block * block_size
            f1.seek(offset)
            f2.seek(offset)
            for start, end in _diff_bytes(f1.read(block_size), f2.read(block_size)):
                add(offset + start, offset + end)

    if first_size != second_size:
        add(min(first_size, second_size), max(first_size, second_size))
    return ranges


def _diff_bytes(a: bytes, b: bytes) -> list[tuple[int, int]]:
    """Byte ranges where a and b differ, comparing only their common length."""
    ranges = []
    start = None
    for i in range(min(len(a), len(b))):
        if a[i] != b[i]:
            if start is None:
                start = i
        elif start is not None:
            ranges.append((start, i))
            start = None
    if start is not None:
        ranges.append((start, min(len(a), len(b))))
    return ranges
