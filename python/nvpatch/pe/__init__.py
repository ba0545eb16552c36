"""
PE32+ image manipulation package for nvpatch.

This package provides the binary-format engine behind the GPU export patch:
- types: PE32+ struct definitions and alignment helpers
- search: Exact byte-pattern search
- image: PEImage structural model and serializer
- section: SectionBuilder for staging new section content
- exports: Export directory decoding and encoding
- bundle: .NET single-file bundle manifest offset correction
- verify: Structural verification utilities
"""

from .image import (
    PEImage,
    SectionInfo,
    Modification,
)
from .section import SectionBuilder
from .exports import (
    ExportEntry,
    ExportTable,
)
from .bundle import (
    BUNDLE_SIGNATURE,
    BundlePatchResult,
    find_bundle_manifest_offset,
    patch_bundle_manifest,
)
from .search import (
    compute_failure_table,
    find_bytes,
)
from .verify import (
    VerificationResult,
    PEVerifier,
    verify_with_llvm_objdump,
    verify_all,
)
from .types import (
    # Structs
    CoffHeader,
    OptionalHeader64,
    SectionHeader,
    DataDirectory,
    ExportDirectoryTable,
    # Constants
    PE_SIGNATURE,
    IMAGE_NT_OPTIONAL_HDR64_MAGIC,
    IMAGE_SCN_CNT_CODE,
    IMAGE_SCN_CNT_INITIALIZED_DATA,
    IMAGE_SCN_CNT_UNINITIALIZED_DATA,
    IMAGE_SCN_MEM_EXECUTE,
    IMAGE_SCN_MEM_READ,
    IMAGE_SCN_MEM_WRITE,
    IMAGE_DIRECTORY_ENTRY_EXPORT,
    IMAGE_DIRECTORY_ENTRY_IMPORT,
    IMAGE_DIRECTORY_ENTRY_BASERELOC,
    # Utilities
    round_up_to_alignment,
    round_down_to_alignment,
    is_power_of_two,
)

__all__ = [
    # Image
    "PEImage",
    "SectionInfo",
    "Modification",
    "SectionBuilder",
    # Exports
    "ExportEntry",
    "ExportTable",
    # Bundle
    "BUNDLE_SIGNATURE",
    "BundlePatchResult",
    "find_bundle_manifest_offset",
    "patch_bundle_manifest",
    # Search
    "compute_failure_table",
    "find_bytes",
    # Verify
    "VerificationResult",
    "PEVerifier",
    "verify_with_llvm_objdump",
    "verify_all",
    # Types
    "CoffHeader",
    "OptionalHeader64",
    "SectionHeader",
    "DataDirectory",
    "ExportDirectoryTable",
    "PE_SIGNATURE",
    "IMAGE_NT_OPTIONAL_HDR64_MAGIC",
    "IMAGE_SCN_CNT_CODE",
    "IMAGE_SCN_CNT_INITIALIZED_DATA",
    "IMAGE_SCN_CNT_UNINITIALIZED_DATA",
    "IMAGE_SCN_MEM_EXECUTE",
    "IMAGE_SCN_MEM_READ",
    "IMAGE_SCN_MEM_WRITE",
    "IMAGE_DIRECTORY_ENTRY_EXPORT",
    "IMAGE_DIRECTORY_ENTRY_IMPORT",
    "IMAGE_DIRECTORY_ENTRY_BASERELOC",
    "round_up_to_alignment",
    "round_down_to_alignment",
    "is_power_of_two",
]
