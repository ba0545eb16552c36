#!/usr/bin/env python3
"""
GPU export patching CLI tool.

Reports or sets the NvOptimusEnablement and AmdPowerXpressRequestHighPerformance
exports of a 64-bit Windows executable, so hybrid-graphics drivers run it on
the high performance GPU.

Usage:
    nvpatch --status app.exe
    nvpatch --enable app.exe [patched.exe]
    nvpatch --disable app.exe
    python -m nvpatch.tools.patch_gpu_exports --enable app.exe --verify
"""

import argparse
import logging
import sys
from pathlib import Path

from nvpatch import __version__
from nvpatch.errors import PatchError
from nvpatch.gpu_exports import GPU_SYMBOLS, patch_binary, read_export_status
from nvpatch.pe.verify import verify_all

logger = logging.getLogger("nvpatch")


def print_status(binary: Path) -> None:
    """Print the current value of each GPU symbol."""
    status = read_export_status(binary)
    for name in GPU_SYMBOLS:
        value = status[name]
        if value is None:
            print(f"Module doesn't export {name} symbol")
        else:
            print(f"Module exports {name} symbol as 0x{value:08X}")


def verify_output(
    binary: Path,
    llvm_objdump: Path | str = "llvm-objdump",
    verbose: bool = False,
) -> bool:
    """Run structural checks and llvm-objdump on a patched image, printing any problems."""
    result = verify_all(binary, llvm_objdump)
    if not result.passed or (verbose and result.warnings):
        print(result, file=sys.stderr)
    return result.passed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nvpatch",
        description=(
            "Add or update NvOptimusEnablement and AmdPowerXpressRequestHighPerformance "
            "exports in a 64-bit Windows executable"
        ),
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--enable",
        dest="mode",
        action="store_const",
        const="enable",
        help="Export both symbols with value 1 (prefer the discrete GPU)",
    )
    mode.add_argument(
        "--disable",
        dest="mode",
        action="store_const",
        const="disable",
        help="Export both symbols with value 0",
    )
    mode.add_argument(
        "--status",
        dest="mode",
        action="store_const",
        const="status",
        help="Show the current value of each symbol (default)",
    )
    parser.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        help="Don't print OK after patching",
    )
    parser.add_argument(
        "--verify",
        action="store_true",
        help="Run structural checks on the output image",
    )
    parser.add_argument(
        "--llvm-objdump",
        default="llvm-objdump",
        help="llvm-objdump used by --verify (default: from PATH)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show detailed progress and debug logging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument("input", type=Path, help="Path to the executable")
    parser.add_argument(
        "output",
        type=Path,
        nargs="?",
        help="Where to write the patched executable (default: patch in place)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        format="[%(asctime)s] %(levelname)1s %(name)s: %(message)s",
        level=logging.DEBUG if args.verbose else logging.WARNING,
    )

    if not args.input.exists():
        print(f"Error: {args.input} does not exist", file=sys.stderr)
        return 1

    mode = args.mode or "status"

    try:
        if mode == "status":
            if args.output is not None:
                parser.error("an output path is only accepted with --enable or --disable")
            print_status(args.input)
            return 0

        stats = patch_binary(
            args.input,
            args.output,
            enable=(mode == "enable"),
            verbose=args.verbose,
        )
    except (PatchError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    output = args.output or args.input
    logger.debug(
        "Wrote %s (%d -> %d bytes, section added: %s, bundle patched: %s)",
        output,
        stats["original_size"],
        stats["new_size"],
        stats["section_added"],
        stats["bundle_patched"],
    )

    if args.verify and not verify_output(output, args.llvm_objdump, args.verbose):
        return 1

    if not args.quiet:
        print("OK")
    return 0


if __name__ == "__main__":
    sys.exit(main())
