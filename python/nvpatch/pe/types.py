"""
PE32+ type definitions for 64-bit Windows images.

This module holds the fixed-layout records that make up the PE header chain
and the export directory, together with the constants and alignment helpers
the rest of the package relies on.

Records are dataclasses rather than NamedTuples because patching needs to
update header fields before they are serialized back into the image.
Every record is parsed with struct.unpack_from at an explicit offset and
written back with struct.pack_into; no record is ever aliased onto the
underlying buffer.

References:
- Microsoft PE/COFF Specification
- https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
"""

import struct
from dataclasses import dataclass
from typing import ClassVar

from ..errors import FormatError, UnsupportedFormat

# =============================================================================
# Constants
# =============================================================================

# PE Signature
PE_SIGNATURE = b"PE\x00\x00"
PE_SIGNATURE_OFFSET_LOCATION = 0x3C  # Offset in DOS header where e_lfanew lives

# Optional header magic
IMAGE_NT_OPTIONAL_HDR32_MAGIC = 0x10B
IMAGE_NT_OPTIONAL_HDR64_MAGIC = 0x20B  # PE32+

# Section characteristics
IMAGE_SCN_CNT_CODE = 0x00000020
IMAGE_SCN_CNT_INITIALIZED_DATA = 0x00000040
IMAGE_SCN_CNT_UNINITIALIZED_DATA = 0x00000080
IMAGE_SCN_MEM_EXECUTE = 0x20000000
IMAGE_SCN_MEM_READ = 0x40000000
IMAGE_SCN_MEM_WRITE = 0x80000000

# Data directory indices
IMAGE_DIRECTORY_ENTRY_EXPORT = 0
IMAGE_DIRECTORY_ENTRY_IMPORT = 1
IMAGE_DIRECTORY_ENTRY_RESOURCE = 2
IMAGE_DIRECTORY_ENTRY_EXCEPTION = 3
IMAGE_DIRECTORY_ENTRY_SECURITY = 4
IMAGE_DIRECTORY_ENTRY_BASERELOC = 5
IMAGE_DIRECTORY_ENTRY_DEBUG = 6
IMAGE_NUMBEROF_DIRECTORY_ENTRIES = 16

# Structure sizes
COFF_HEADER_SIZE = 20
DATA_DIRECTORY_SIZE = 8
SECTION_HEADER_SIZE = 40

# TimeDateStamp written into rebuilt export directories
EXPORT_TIMESTAMP_SENTINEL = 0xFFFFFFFF


# =============================================================================
# PE Structures
# =============================================================================


@dataclass
class CoffHeader:
    """COFF file header (IMAGE_FILE_HEADER).

    This 20-byte header comes right after the PE signature.
    """

    Machine: int  # Target machine type (e.g., AMD64)
    NumberOfSections: int
    TimeDateStamp: int
    PointerToSymbolTable: int  # Usually 0 for executables
    NumberOfSymbols: int  # Usually 0 for executables
    SizeOfOptionalHeader: int
    Characteristics: int  # File characteristics flags

    STRUCT_FMT: ClassVar[str] = "<HHIIIHH"
    SIZE: ClassVar[int] = 20

    @classmethod
    def from_bytes(cls, data: bytes | bytearray, offset: int = 0) -> "CoffHeader":
        """Parse COFF header from binary data."""
        if len(data) < offset + cls.SIZE:
            raise FormatError(
                f"Data too short for COFF header: {len(data)} < {offset + cls.SIZE}"
            )

        fields = struct.unpack_from(cls.STRUCT_FMT, data, offset)
        return cls(*fields)

    def write_to(self, data: bytearray, offset: int) -> None:
        """Write COFF header to mutable buffer at offset."""
        struct.pack_into(
            self.STRUCT_FMT,
            data,
            offset,
            self.Machine,
            self.NumberOfSections,
            self.TimeDateStamp,
            self.PointerToSymbolTable,
            self.NumberOfSymbols,
            self.SizeOfOptionalHeader,
            self.Characteristics,
        )


@dataclass
class DataDirectory:
    """Data directory entry (IMAGE_DATA_DIRECTORY).

    Each entry points to a data structure in the image.
    """

    VirtualAddress: int  # RVA of the data
    Size: int  # Size of the data

    STRUCT_FMT: ClassVar[str] = "<II"
    SIZE: ClassVar[int] = 8

    @classmethod
    def from_bytes(cls, data: bytes | bytearray, offset: int = 0) -> "DataDirectory":
        """Parse data directory from binary data."""
        if len(data) < offset + cls.SIZE:
            raise FormatError("Data too short for data directory")
        fields = struct.unpack_from(cls.STRUCT_FMT, data, offset)
        return cls(*fields)

    def to_bytes(self) -> bytes:
        """Serialize data directory to binary data."""
        return struct.pack(self.STRUCT_FMT, self.VirtualAddress, self.Size)

    def write_to(self, data: bytearray, offset: int) -> None:
        """Write data directory to mutable buffer at offset."""
        struct.pack_into(self.STRUCT_FMT, data, offset, self.VirtualAddress, self.Size)

    @property
    def is_present(self) -> bool:
        """A directory with RVA 0 is absent, whatever its size says."""
        return self.VirtualAddress != 0


@dataclass
class OptionalHeader64:
    """PE32+ optional header (IMAGE_OPTIONAL_HEADER64).

    This header is required for executable images despite its name.
    The "optional" refers to object files which don't have it.

    Note: Data directories are stored separately as a list. Their count is
    derived from SizeOfOptionalHeader, not from NumberOfRvaAndSizes.
    """

    Magic: int  # 0x20B for PE32+
    MajorLinkerVersion: int
    MinorLinkerVersion: int
    SizeOfCode: int
    SizeOfInitializedData: int
    SizeOfUninitializedData: int
    AddressOfEntryPoint: int
    BaseOfCode: int
    ImageBase: int  # 8 bytes for PE32+
    SectionAlignment: int
    FileAlignment: int
    MajorOperatingSystemVersion: int
    MinorOperatingSystemVersion: int
    MajorImageVersion: int
    MinorImageVersion: int
    MajorSubsystemVersion: int
    MinorSubsystemVersion: int
    Win32VersionValue: int
    SizeOfImage: int
    SizeOfHeaders: int
    CheckSum: int
    Subsystem: int
    DllCharacteristics: int
    SizeOfStackReserve: int  # 8 bytes for PE32+
    SizeOfStackCommit: int  # 8 bytes for PE32+
    SizeOfHeapReserve: int  # 8 bytes for PE32+
    SizeOfHeapCommit: int  # 8 bytes for PE32+
    LoaderFlags: int
    NumberOfRvaAndSizes: int

    # Struct format for the fixed part (before data directories)
    # 2 + 1 + 1 + 4*5 + 8 + 4*2 + 2*6 + 4*4 + 2*2 + 8*4 + 4*2 = 112 bytes
    STRUCT_FMT: ClassVar[str] = "<HBBIIIIIQIIHHHHHH" "IIIIHHQQQQII"
    SIZE: ClassVar[int] = 112  # Fixed part, before data directories

    @classmethod
    def from_bytes(cls, data: bytes | bytearray, offset: int = 0) -> "OptionalHeader64":
        """Parse optional header from binary data."""
        # Check the magic first so PE32 images get the more specific error
        if len(data) >= offset + 2:
            (magic,) = struct.unpack_from("<H", data, offset)
            if magic != IMAGE_NT_OPTIONAL_HDR64_MAGIC:
                raise UnsupportedFormat(
                    f"Not a PE32+ file (magic: 0x{magic:04X}, "
                    f"expected 0x{IMAGE_NT_OPTIONAL_HDR64_MAGIC:04X})"
                )

        if len(data) < offset + cls.SIZE:
            raise FormatError(
                f"Data too short for optional header: {len(data)} < {offset + cls.SIZE}"
            )

        fields = struct.unpack_from(cls.STRUCT_FMT, data, offset)
        return cls(*fields)

    def write_to(self, data: bytearray, offset: int) -> None:
        """Write optional header to mutable buffer at offset."""
        struct.pack_into(
            self.STRUCT_FMT,
            data,
            offset,
            self.Magic,
            self.MajorLinkerVersion,
            self.MinorLinkerVersion,
            self.SizeOfCode,
            self.SizeOfInitializedData,
            self.SizeOfUninitializedData,
            self.AddressOfEntryPoint,
            self.BaseOfCode,
            self.ImageBase,
            self.SectionAlignment,
            self.FileAlignment,
            self.MajorOperatingSystemVersion,
            self.MinorOperatingSystemVersion,
            self.MajorImageVersion,
            self.MinorImageVersion,
            self.MajorSubsystemVersion,
            self.MinorSubsystemVersion,
            self.Win32VersionValue,
            self.SizeOfImage,
            self.SizeOfHeaders,
            self.CheckSum,
            self.Subsystem,
            self.DllCharacteristics,
            self.SizeOfStackReserve,
            self.SizeOfStackCommit,
            self.SizeOfHeapReserve,
            self.SizeOfHeapCommit,
            self.LoaderFlags,
            self.NumberOfRvaAndSizes,
        )


@dataclass
class SectionHeader:
    """PE/COFF section header (IMAGE_SECTION_HEADER).

    Each section header is 40 bytes.
    """

    Name: bytes  # 8 bytes, null-padded (NOT null-terminated if 8 chars)
    VirtualSize: int  # Size in memory (can be > SizeOfRawData)
    VirtualAddress: int  # RVA of section
    SizeOfRawData: int  # Size in file (rounded to FileAlignment)
    PointerToRawData: int  # File offset
    PointerToRelocations: int  # Usually 0 for executables
    PointerToLinenumbers: int  # Deprecated, usually 0
    NumberOfRelocations: int
    NumberOfLinenumbers: int
    Characteristics: int  # Section flags

    STRUCT_FMT: ClassVar[str] = "<8sIIIIIIHHI"
    SIZE: ClassVar[int] = 40

    @classmethod
    def from_bytes(cls, data: bytes | bytearray, offset: int = 0) -> "SectionHeader":
        """Parse section header from binary data."""
        if len(data) < offset + cls.SIZE:
            raise FormatError(
                f"Data too short for section header: {len(data)} < {offset + cls.SIZE}"
            )

        fields = struct.unpack_from(cls.STRUCT_FMT, data, offset)
        return cls(*fields)

    def write_to(self, data: bytearray, offset: int) -> None:
        """Write section header to mutable buffer at offset."""
        struct.pack_into(
            self.STRUCT_FMT,
            data,
            offset,
            self.Name,
            self.VirtualSize,
            self.VirtualAddress,
            self.SizeOfRawData,
            self.PointerToRawData,
            self.PointerToRelocations,
            self.PointerToLinenumbers,
            self.NumberOfRelocations,
            self.NumberOfLinenumbers,
            self.Characteristics,
        )

    @property
    def name_str(self) -> str:
        """Get section name as string (strips null padding)."""
        null_pos = self.Name.find(b"\x00")
        if null_pos >= 0:
            return self.Name[:null_pos].decode("ascii", errors="replace")
        return self.Name.decode("ascii", errors="replace")

    @property
    def end_rva(self) -> int:
        """RVA of end of section in memory."""
        return self.VirtualAddress + self.VirtualSize

    @property
    def end_file_offset(self) -> int:
        """File offset of end of section data."""
        return self.PointerToRawData + self.SizeOfRawData

    @property
    def is_code(self) -> bool:
        return bool(self.Characteristics & IMAGE_SCN_CNT_CODE)

    @property
    def is_initialized_data(self) -> bool:
        return bool(self.Characteristics & IMAGE_SCN_CNT_INITIALIZED_DATA)

    @property
    def is_uninitialized_data(self) -> bool:
        return bool(self.Characteristics & IMAGE_SCN_CNT_UNINITIALIZED_DATA)

    @property
    def is_readable(self) -> bool:
        return bool(self.Characteristics & IMAGE_SCN_MEM_READ)

    @property
    def is_writable(self) -> bool:
        return bool(self.Characteristics & IMAGE_SCN_MEM_WRITE)

    def contains_rva(self, rva: int) -> bool:
        """Check if an RVA falls within this section."""
        return self.VirtualAddress <= rva < self.end_rva

    def contains_file_offset(self, offset: int) -> bool:
        """Check if a file offset falls within this section's raw data."""
        if self.SizeOfRawData == 0:
            return False
        return self.PointerToRawData <= offset < self.end_file_offset


@dataclass
class ExportDirectoryTable:
    """Export directory table (IMAGE_EXPORT_DIRECTORY).

    The 40-byte header at the start of the export data directory. All table
    locations are RVAs; the address table is indexed by ordinal - OrdinalBase
    and the name pointer / ordinal tables run in parallel, sorted by name.
    """

    Flags: int  # Reserved, must be 0
    TimeDateStamp: int
    MajorVersion: int
    MinorVersion: int
    NameRVA: int  # Module name
    OrdinalBase: int
    AddressTableEntries: int
    NumberOfNamePointers: int
    ExportAddressTableRVA: int
    NamePointerRVA: int
    OrdinalTableRVA: int

    STRUCT_FMT: ClassVar[str] = "<IIHHIIIIIII"
    SIZE: ClassVar[int] = 40

    @classmethod
    def from_bytes(
        cls, data: bytes | bytearray, offset: int = 0
    ) -> "ExportDirectoryTable":
        """Parse export directory from binary data."""
        if len(data) < offset + cls.SIZE:
            raise FormatError(
                f"Data too short for export directory: {len(data)} < {offset + cls.SIZE}"
            )

        fields = struct.unpack_from(cls.STRUCT_FMT, data, offset)
        return cls(*fields)

    def to_bytes(self) -> bytes:
        """Serialize export directory to binary data."""
        return struct.pack(
            self.STRUCT_FMT,
            self.Flags,
            self.TimeDateStamp,
            self.MajorVersion,
            self.MinorVersion,
            self.NameRVA,
            self.OrdinalBase,
            self.AddressTableEntries,
            self.NumberOfNamePointers,
            self.ExportAddressTableRVA,
            self.NamePointerRVA,
            self.OrdinalTableRVA,
        )


# =============================================================================
# Helper Functions
# =============================================================================


def round_up_to_alignment(value: int, alignment: int) -> int:
    """Round value up to next alignment boundary.

    Works for any positive alignment, not only powers of two.

    Raises:
        ValueError: If alignment is not positive
    """
    if alignment <= 0:
        raise ValueError(f"Alignment must be positive, got {alignment}")
    over = value % alignment
    if over:
        return value + alignment - over
    return value


def round_down_to_alignment(value: int, alignment: int) -> int:
    """Round value down to previous alignment boundary."""
    if alignment <= 0:
        raise ValueError(f"Alignment must be positive, got {alignment}")
    return value - value % alignment


def is_power_of_two(value: int) -> bool:
    return value > 0 and (value & (value - 1)) == 0


def section_name_to_bytes(name: str) -> bytes:
    """Convert section name string to 8-byte padded bytes.

    Section names are limited to 8 characters in PE/COFF.
    """
    if len(name) > 8:
        raise ValueError(f"Section name too long (max 8 chars): {name}")
    return name.encode("ascii").ljust(8, b"\x00")


def cstring_from_bytes(raw: bytes) -> str:
    """Decode a string read from the image.

    Names are UTF-8 by convention but nothing enforces it; invalid bytes
    decode to surrogates so cstring_to_bytes() reproduces them exactly.
    """
    return raw.decode("utf-8", errors="surrogateescape")


def cstring_to_bytes(text: str) -> bytes:
    """Encode a string for the image (without the NUL terminator)."""
    return text.encode("utf-8", errors="surrogateescape")
