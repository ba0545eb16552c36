"""
GPU selection exports for Windows executables.

Hybrid-graphics laptop drivers look for two exported data symbols in the
process image to decide whether to run it on the discrete GPU:

- NvOptimusEnablement (NVIDIA Optimus)
- AmdPowerXpressRequestHighPerformance (AMD PowerXpress)

A value of 1 requests the high performance GPU. This module reads and sets
those values on an existing PE32+ image. It handles:
- Reporting the current value of each symbol
- Overwriting the value in place when both symbols are already exported
- Otherwise adding a .nvpatch section that holds the missing values and a
  rebuilt export directory
- Keeping .NET single-file bundles loadable after the file grows

All operations use PEImage for in-memory manipulation; the output file is
written once, after every step has succeeded.
"""

import logging
import stat
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConflictingState
from .pe.exports import ExportEntry, ExportTable
from .pe.image import PEImage
from .pe.types import (
    DataDirectory,
    IMAGE_DIRECTORY_ENTRY_EXPORT,
    IMAGE_SCN_CNT_INITIALIZED_DATA,
    IMAGE_SCN_MEM_READ,
)

logger = logging.getLogger(__name__)

GPU_SYMBOLS = (
    "NvOptimusEnablement",
    "AmdPowerXpressRequestHighPerformance",
)

# PE section names (8-char limit)
SECTION_NVPATCH = ".nvpatch"
SECTION_NVPATCH_CHARACTERISTICS = IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ


@dataclass
class ExportPatchResult:
    """Outcome of apply_exports()."""

    value: int
    updated: list[str] = field(default_factory=list)  # Already exported, value rewritten
    added: list[str] = field(default_factory=list)  # Newly exported from .nvpatch
    section_added: bool = False
    export_directory: DataDirectory | None = None  # Set when the table was rebuilt


def query_exports(
    image: PEImage,
    symbols: tuple[str, ...] | list[str] = GPU_SYMBOLS,
) -> dict[str, int | None]:
    """Read the current 32-bit value of each symbol.

    Args:
        image: Loaded image
        symbols: Export names to look up

    Returns:
        Mapping of symbol name to its value, or None if it is not exported
    """
    exports = ExportTable.from_image(image)
    status: dict[str, int | None] = {}
    for name in symbols:
        entry = exports.find(name)
        if entry is None or entry.forwarder is not None:
            status[name] = None
        elif image.is_zero_fill_rva(entry.rva):
            status[name] = 0
        else:
            status[name] = image.read_u32_at_rva(entry.rva)
    return status


def apply_exports(
    image: PEImage,
    value: int,
    module_name: str = "",
    symbols: tuple[str, ...] | list[str] = GPU_SYMBOLS,
) -> ExportPatchResult:
    """Make the image export every symbol with the given value.

    When every symbol is already exported its value is overwritten where it
    lives and the layout is untouched. Otherwise a .nvpatch section is
    appended holding a value slot for each missing symbol followed by a
    complete re-encoding of the export directory (existing entries keep
    their ordinals and RVAs), and the export data directory is pointed at
    it.

    Args:
        image: Loaded image, modified in memory
        value: 32-bit value to store (0 or 1 for the GPU symbols)
        module_name: Module name for the export directory, used only when
            the image has no export directory of its own
        symbols: Export names to set

    Returns:
        ExportPatchResult describing what changed

    Raises:
        ConflictingState: If a new section is needed but .nvpatch already
            exists (the image was patched before by another tool), if a
            symbol is forwarded, or if a nonzero value would have to go into
            a symbol stored in a section's zero-filled tail
        InconsistentExportTable: If the existing export directory is broken
    """
    exports = ExportTable.from_image(image)
    result = ExportPatchResult(value=value)

    missing = [name for name in symbols if name not in exports]
    for name in symbols:
        entry = exports.find(name)
        if entry is not None and entry.forwarder is not None:
            raise ConflictingState(
                f"Symbol {name} is forwarded to {entry.forwarder}, cannot set its value"
            )
        if entry is not None and value != 0 and image.is_zero_fill_rva(entry.rva):
            raise ConflictingState(
                f"Symbol {name} at RVA 0x{entry.rva:x} has no file backing "
                f"(zero-filled section tail), cannot set its value"
            )

    if missing and image.has_section(SECTION_NVPATCH):
        raise ConflictingState(
            f"Image already has a {SECTION_NVPATCH} section but does not export "
            f"{', '.join(missing)}"
        )

    # Existing symbols: overwrite their value in place
    for name in symbols:
        if name in missing:
            continue
        entry = exports.find(name)
        # Zero-filled storage already holds 0
        if not image.is_zero_fill_rva(entry.rva):
            image.write_u32_at_rva(
                entry.rva, value, description=f"set {name} = 0x{value:x}"
            )
        result.updated.append(name)
        logger.debug("Set %s at RVA 0x%x to 0x%x", name, entry.rva, value)

    if not missing:
        return result

    builder = image.append_section(SECTION_NVPATCH, SECTION_NVPATCH_CHARACTERISTICS)

    # Value slots for the new symbols come first, then the export directory
    for name in missing:
        rva = builder.write_u32(value)
        exports.add(ExportEntry(ordinal=exports.next_ordinal(), name=name, rva=rva))
        result.added.append(name)
        logger.debug("Exporting %s from RVA 0x%x", name, rva)

    if not exports.module_name:
        exports.module_name = module_name

    directory = exports.encode(builder)
    builder.close()
    image.set_data_directory(IMAGE_DIRECTORY_ENTRY_EXPORT, directory)

    result.section_added = True
    result.export_directory = directory
    return result


def patch_binary(
    input_path: Path,
    output_path: Path | None = None,
    enable: bool = True,
    verbose: bool = False,
) -> dict:
    """Enable or disable high performance GPU selection for an executable.

    Args:
        input_path: Path to input image
        output_path: Path for output image. If None, patches in place.
        enable: Store 1 (True) or 0 (False) in every GPU symbol
        verbose: If True, print detailed progress information

    Returns:
        Dictionary with statistics:
        - section_added: Whether a .nvpatch section was appended
        - original_size: Original file size
        - new_size: Final file size
        - bundle_patched: Whether a .NET bundle manifest was updated
        - symbols: Value of each GPU symbol after patching

    Raises:
        PatchError: If the image cannot be patched; nothing is written
    """
    if output_path is None:
        output_path = input_path

    original_size = input_path.stat().st_size
    original_mode = stat.S_IMODE(input_path.stat().st_mode)
    value = 1 if enable else 0

    image = PEImage.load(input_path)

    if verbose:
        print(f"\nSetting GPU exports to {value} in {input_path}")

    result = apply_exports(image, value, module_name=input_path.name)

    if verbose:
        for name in result.updated:
            print(f"  Updated {name}")
        for name in result.added:
            print(f"  Added {name}")
        if result.section_added:
            builder = image.new_sections[-1]
            print(
                f"  Added {SECTION_NVPATCH} at RVA 0x{builder.rva:x} "
                f"(0x{builder.size:x} bytes)"
            )

    new_size = image.save(output_path, original_mode)
    bundle = image.bundle_patch

    if verbose and bundle is not None:
        print(
            f"  Updated .NET bundle manifest v{bundle.major_version}."
            f"{bundle.minor_version} ({bundle.offsets_patched} offsets)"
        )

    logger.info(
        "Patched %s: GPU exports = %d (%d updated, %d added)",
        output_path,
        value,
        len(result.updated),
        len(result.added),
    )

    return {
        "section_added": result.section_added,
        "original_size": original_size,
        "new_size": new_size,
        "bundle_patched": bundle is not None,
        "symbols": {name: value for name in GPU_SYMBOLS},
    }


def read_export_status(path: Path) -> dict[str, int | None]:
    """Read the GPU symbol values of an image on disk.

    Returns:
        Mapping of symbol name to value, None for symbols not exported
    """
    return query_exports(PEImage.load(path))
