"""
nvpatch: GPU selection exports for 64-bit Windows executables.

Hybrid-graphics drivers pick the discrete GPU for a process whose image
exports NvOptimusEnablement or AmdPowerXpressRequestHighPerformance with a
value of 1. This package adds or updates those exports in an existing PE32+
image, without relinking:

    from nvpatch import patch_binary, read_export_status

    # Enable the high performance GPU, patching in place
    stats = patch_binary(Path("app.exe"), enable=True)

    # {"NvOptimusEnablement": 1, "AmdPowerXpressRequestHighPerformance": 1}
    status = read_export_status(Path("app.exe"))

For lower level PE operations, use the pe subpackage directly:

    from nvpatch.pe import PEImage, ExportTable
"""

__version__ = "0.1.0"

from .errors import (
    PatchError,
    FormatError,
    UnsupportedFormat,
    InconsistentExportTable,
    ConflictingState,
)
from .gpu_exports import (
    GPU_SYMBOLS,
    SECTION_NVPATCH,
    ExportPatchResult,
    query_exports,
    apply_exports,
    patch_binary,
    read_export_status,
)

__all__ = [
    "__version__",
    # Errors
    "PatchError",
    "FormatError",
    "UnsupportedFormat",
    "InconsistentExportTable",
    "ConflictingState",
    # GPU exports
    "GPU_SYMBOLS",
    "SECTION_NVPATCH",
    "ExportPatchResult",
    "query_exports",
    "apply_exports",
    "patch_binary",
    "read_export_status",
]
