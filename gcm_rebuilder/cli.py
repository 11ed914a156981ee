#!/usr/bin/env python3
"""
Command line interface - inspect, extract and rebuild GameCube disc images
"""

import argparse
import sys
from datetime import datetime
from pathlib import Path

from .fst import FILE_ALIGN
from .game import ROM_SIZE, Game, Rebuilder
from .sections import WRITE_CHUNK_SIZE
from .verify import compare_images, image_info


def parse_int(value: str) -> int:
    """Parse an integer written in any Python literal base (e.g. 0x8000)."""
    try:
        return int(value, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer value: {value!r}")


def make_progress_callback(label: str, verbose: bool):
    """Return a callable(done, total) that rewrites one stderr line, or None if not verbose."""
    if not verbose:
        return None

    def progress_callback(done: int, total: int) -> None:
        sys.stderr.write(f"\r[{datetime.now().strftime('%Y-%m-%d %H:%M:%S')}] {done}/{total} {label}")
        sys.stderr.flush()
        if done == total:
            sys.stderr.write("\n")
            sys.stderr.flush()

    return progress_callback


def open_game(args, iso) -> Game:
    return Game.open(iso, args.offset, verbose=args.verbose, write_chunk_size=args.write_chunk_size)


def command_info(args):
    with open(args.image, 'rb') as iso:
        game = open_game(args, iso)
    game.print_info()
    if not (args.no_md5 and args.no_sha256):
        info = image_info(args.image, capture_md5=not args.no_md5, capture_sha256=not args.no_sha256)
        print("")
        print(f"Image size: {info.size:,} bytes")
        if info.md5:
            print(f"MD5: {info.md5}")
        if info.sha256:
            print(f"SHA256: {info.sha256}")


def command_layout(args):
    with open(args.image, 'rb') as iso:
        game = open_game(args, iso)
    for section in game.rom_layout():
        print(f"0x{section.start:08x}-0x{section.end:08x}: {section.section_type.value}: {section.name}")


def command_find(args):
    with open(args.image, 'rb') as iso:
        game = open_game(args, iso)
    section = game.find_offset(args.find_offset)
    if section is None:
        print(f"0x{args.find_offset:x}: not part of any region")
        return 1
    print(f"0x{args.find_offset:x}: {section.section_type.value} '{section.name}' "
          f"(0x{section.start:x}-0x{section.end:x}, +0x{args.find_offset - section.start:x})")
    return 0


def command_extract(args):
    with open(args.image, 'rb') as iso:
        game = open_game(args, iso)
        count = game.extract(iso, args.directory,
                             progress_callback=make_progress_callback("files written", args.verbose))
    print(f"Extracted {count} files to {args.directory}", file=sys.stderr)


def command_extract_file(args):
    with open(args.image, 'rb') as iso:
        game = open_game(args, iso)
        found = game.extract_section_with_name(
            args.name, args.output, iso,
            progress_callback=make_progress_callback("files written", args.verbose))
    if not found:
        print(f"Not found: {args.name}", file=sys.stderr)
        return 1
    return 0


def command_rebuild(args):
    rebuilder = Rebuilder(
        args.directory,
        rom_size=args.rom_size,
        write_chunk_size=args.write_chunk_size,
        file_align=args.align,
        verbose=args.verbose,
    )
    # 'x' so an existing image is never overwritten
    with open(args.output, 'xb') as output:
        rebuilder.rebuild(output, rebuild_files=args.rebuild_systemdata,
                          progress_callback=make_progress_callback("files added", args.verbose))


def command_verify(args):
    mismatches = compare_images(args.image, args.other, args.block_size, exact=args.exact)
    if not mismatches:
        print("Images are identical" if args.exact else "Images are identical (all block hashes match)")
        return 0

    layout = None
    try:
        with open(args.image, 'rb') as iso:
            layout = open_game(args, iso).rom_layout()
    except ValueError as e:
        print(f"Warning: cannot decode {args.image}: {e}", file=sys.stderr)

    for start, end in mismatches:
        where = ""
        if layout is not None:
            section = layout.find_offset(start)
            where = f" in {section.section_type.value} '{section.name}'" if section else " in padding"
        print(f"0x{start:08x}-0x{end:08x}: {end - start:,} bytes differ{where}")
    return 1


def main():
    """Main entry point for the disc image tool."""
    parser = argparse.ArgumentParser(
        description='Inspect, extract and rebuild GameCube disc images',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Extract an image, then rebuild it byte for byte
  %(prog)s extract game.iso game_root
  %(prog)s rebuild game_root rebuilt.iso
  %(prog)s verify game.iso rebuilt.iso

  # Which region holds a byte?
  %(prog)s find game.iso 0x1234567
        """
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose mode with timestamped progress messages to stderr'
    )
    parser.add_argument(
        '--write-chunk-size',
        type=parse_int,
        default=WRITE_CHUNK_SIZE,
        metavar='BYTES',
        help='Chunk size in bytes for copying data (default: 16777216, which is 16 MiB)'
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    def add_image_arguments(subparser):
        subparser.add_argument('image', type=Path, help='Path to the disc image')
        subparser.add_argument(
            '--offset',
            type=parse_int,
            default=0,
            metavar='BYTES',
            help='Offset of the disc image inside the file (default: 0)'
        )

    info_parser = subparsers.add_parser('info', help='Show header information and the system layout')
    add_image_arguments(info_parser)
    info_parser.add_argument('--no-md5', action='store_true', help='Skip calculating the MD5 hash')
    info_parser.add_argument('--no-sha256', action='store_true', help='Skip calculating the SHA256 hash')
    info_parser.set_defaults(func=command_info)

    layout_parser = subparsers.add_parser('layout', help='List every region of the image')
    add_image_arguments(layout_parser)
    layout_parser.set_defaults(func=command_layout)

    find_parser = subparsers.add_parser('find', help='Show the region containing an offset')
    add_image_arguments(find_parser)
    find_parser.add_argument('find_offset', type=parse_int, metavar='OFFSET', help='Image offset')
    find_parser.set_defaults(func=command_find)

    extract_parser = subparsers.add_parser('extract', help='Extract the image into a new directory')
    add_image_arguments(extract_parser)
    extract_parser.add_argument('directory', type=Path, help='Directory to create')
    extract_parser.set_defaults(func=command_extract)

    extract_file_parser = subparsers.add_parser(
        'extract-file',
        help="Extract one region by name ('&&systemdata/Start.dol', an FST path or '.text0')"
    )
    add_image_arguments(extract_file_parser)
    extract_file_parser.add_argument('name', help='Name of the region')
    extract_file_parser.add_argument('output', type=Path, help='File to create')
    extract_file_parser.set_defaults(func=command_extract_file)

    rebuild_parser = subparsers.add_parser('rebuild', help='Rebuild an image from an extracted directory')
    rebuild_parser.add_argument('directory', type=Path, help='Root of the extracted tree')
    rebuild_parser.add_argument('output', type=Path, help='Image file to create')
    rebuild_parser.add_argument(
        '-r', '--rebuild-systemdata',
        action='store_true',
        help='Regenerate Game.toc and ISO.hdr from the directory tree first'
    )
    rebuild_parser.add_argument(
        '--rom-size',
        type=parse_int,
        default=ROM_SIZE,
        metavar='BYTES',
        help=f'Size of the rebuilt image (default: 0x{ROM_SIZE:x})'
    )
    rebuild_parser.add_argument(
        '--align',
        type=parse_int,
        default=FILE_ALIGN,
        metavar='BYTES',
        help=f'File alignment used with --rebuild-systemdata (default: 0x{FILE_ALIGN:x})'
    )
    rebuild_parser.set_defaults(func=command_rebuild)

    verify_parser = subparsers.add_parser('verify', help='Compare two images and name the differing regions')
    add_image_arguments(verify_parser)
    verify_parser.add_argument('other', type=Path, help='Image to compare against')
    verify_parser.add_argument(
        '-b', '--block-size',
        type=parse_int,
        default=4096,
        metavar='BYTES',
        help='Block size in bytes for hashing (default: 4096, which is 4KB)'
    )
    verify_parser.add_argument(
        '--exact',
        action='store_true',
        help='Also compare blocks with equal hashes byte by byte'
    )
    verify_parser.set_defaults(func=command_verify)

    args = parser.parse_args()

    if args.write_chunk_size <= 0:
        parser.error(f"Write chunk size must be positive, got {args.write_chunk_size}")
    if getattr(args, 'align', 1) <= 0:
        parser.error(f"Alignment must be positive, got {args.align}")
    if getattr(args, 'block_size', 1) <= 0:
        parser.error(f"Block size must be positive, got {args.block_size}")
    if hasattr(args, 'image') and not args.image.is_file():
        parser.error(f"Image file does not exist: {args.image}")

    try:
        exit_code = args.func(args)
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    sys.exit(exit_code or 0)


if __name__ == '__main__':
    main()
