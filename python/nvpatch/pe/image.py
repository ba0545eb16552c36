"""
PE32+ image model.

PEImage parses the header chain of a 64-bit Windows image once, answers
address queries against its section table, stages new sections and finally
serializes a complete new image.

Design principles:
- Parse once, modify in memory, write once
- The loaded bytes are a private copy; edits go through explicit field
  writes, staged SectionBuilders and header re-serialization
- Fail fast with clear error messages, before anything is written

Output layout produced by serialize():
1. Original bytes (with updated headers) up to the end of the last
   original section's raw data
2. Each new section at its file offset, zero-padded to FileAlignment
3. Any bytes that followed the last original section (overlay data such as
   a .NET single-file bundle), with bundle manifest offsets corrected
"""

import dataclasses
import logging
import os
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from ..errors import ConflictingState, FormatError
from .bundle import BundlePatchResult, patch_bundle_manifest
from .section import SectionBuilder
from .types import (
    CoffHeader,
    OptionalHeader64,
    SectionHeader,
    DataDirectory,
    PE_SIGNATURE,
    cstring_from_bytes,
    PE_SIGNATURE_OFFSET_LOCATION,
    COFF_HEADER_SIZE,
    SECTION_HEADER_SIZE,
    DATA_DIRECTORY_SIZE,
    IMAGE_SCN_CNT_CODE,
    IMAGE_SCN_CNT_INITIALIZED_DATA,
    IMAGE_SCN_CNT_UNINITIALIZED_DATA,
    IMAGE_SCN_MEM_READ,
    is_power_of_two,
    round_up_to_alignment,
)

logger = logging.getLogger(__name__)


@dataclass
class SectionInfo:
    """Information about a section, combining header with derived data."""

    index: int
    name: str
    header: SectionHeader

    @property
    def rva(self) -> int:
        """Relative virtual address."""
        return self.header.VirtualAddress

    @property
    def virtual_size(self) -> int:
        """Size in memory."""
        return self.header.VirtualSize

    @property
    def file_offset(self) -> int:
        """File offset of raw data."""
        return self.header.PointerToRawData

    @property
    def raw_size(self) -> int:
        """Size in file."""
        return self.header.SizeOfRawData


@dataclass
class Modification:
    """Record of a modification made to the image."""

    operation: str  # e.g., "write_u32", "append_section"
    file_offset: int
    size: int
    description: str


class PEImage:
    """In-memory model of a PE32+ image.

    Usage:
        image = PEImage.load(Path("app.exe"))

        # Query operations
        offset = image.rva_to_file_offset(0x1000)
        exports_dir = image.get_data_directory(IMAGE_DIRECTORY_ENTRY_EXPORT)

        # Stage a new section and point a data directory into it
        builder = image.append_section(".nvpatch")
        builder.write_u32(1)

        # Write the new image
        image.save(Path("app_patched.exe"))
    """

    # Reasonable limits for PE structures to prevent DoS from malformed files
    MAX_NUMBER_OF_SECTIONS = 256
    MAX_NUMBER_OF_DATA_DIRECTORIES = 64

    def __init__(
        self,
        data: bytes | bytearray,
        path: Path | None = None,
    ):
        """Initialize with image bytes.

        Prefer using PEImage.load() for most use cases.

        Args:
            data: PE image bytes (copied, never modified)
            path: Original file path (for error messages)

        Raises:
            FormatError: If the PE signature or optional header is missing
                or the headers are malformed
            UnsupportedFormat: If the image is not PE32+
        """
        self._original = bytes(data)
        self._data = bytearray(data)
        self._path = path
        self._modifications: list[Modification] = []
        self._new_sections: list[SectionBuilder] = []
        self._bundle_patch: BundlePatchResult | None = None

        if len(data) < PE_SIGNATURE_OFFSET_LOCATION + 4:
            raise FormatError(f"Data too short for DOS header: {len(data)} bytes")

        # Verify PE signature
        (self._pe_offset,) = struct.unpack_from(
            "<I", data, PE_SIGNATURE_OFFSET_LOCATION
        )
        if self._pe_offset + 4 > len(data):
            raise FormatError(
                f"Invalid PE header offset {self._pe_offset:#x}: "
                f"must be within file bounds (0 to {len(data) - 4})"
            )
        pe_sig = bytes(data[self._pe_offset : self._pe_offset + 4])
        if pe_sig != PE_SIGNATURE:
            raise FormatError(f"PE signature not found (got {pe_sig!r})")

        # Parse COFF header (after PE signature)
        coff_offset = self._pe_offset + 4
        self._coff_hdr = CoffHeader.from_bytes(data, coff_offset)
        if self._coff_hdr.SizeOfOptionalHeader == 0:
            raise FormatError("Optional header missing")

        # Parse optional header
        self._opt_offset = coff_offset + COFF_HEADER_SIZE
        self._opt_hdr = OptionalHeader64.from_bytes(data, self._opt_offset)
        if self._coff_hdr.SizeOfOptionalHeader < OptionalHeader64.SIZE:
            raise FormatError(
                f"SizeOfOptionalHeader ({self._coff_hdr.SizeOfOptionalHeader}) is "
                f"smaller than the PE32+ fixed fields ({OptionalHeader64.SIZE})"
            )
        self._validate_alignment("SectionAlignment", self._opt_hdr.SectionAlignment)
        self._validate_alignment("FileAlignment", self._opt_hdr.FileAlignment)

        # The declared optional header size, not NumberOfRvaAndSizes, decides
        # where the section table starts and therefore how many directories fit
        self._data_dir_offset = self._opt_offset + OptionalHeader64.SIZE
        self._section_table_offset = (
            self._opt_offset + self._coff_hdr.SizeOfOptionalHeader
        )
        self._data_dirs = self._parse_data_directories()
        self._sections = self._parse_sections()

        logger.debug(
            "Loaded %s: %d sections, %d data directories, "
            "section alignment 0x%x, file alignment 0x%x",
            path or "<memory>",
            len(self._sections),
            len(self._data_dirs),
            self.section_alignment,
            self.file_alignment,
        )

    @classmethod
    def load(cls, path: Path) -> "PEImage":
        """Load a PE image from file.

        Args:
            path: Path to PE image

        Returns:
            PEImage instance ready for modifications
        """
        return cls(path.read_bytes(), path)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def data(self) -> bytes:
        """Snapshot of the current image bytes (headers not yet updated)."""
        return bytes(self._data)

    @property
    def original_data(self) -> bytes:
        """Image bytes exactly as loaded."""
        return self._original

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def coff_header(self) -> CoffHeader:
        """COFF file header."""
        return self._coff_hdr

    @property
    def optional_header(self) -> OptionalHeader64:
        """PE32+ optional header."""
        return self._opt_hdr

    @property
    def modifications(self) -> list[Modification]:
        """List of modifications made."""
        return self._modifications

    @property
    def new_sections(self) -> list[SectionBuilder]:
        """Sections staged with append_section(), in append order."""
        return list(self._new_sections)

    @property
    def bundle_patch(self) -> BundlePatchResult | None:
        """Bundle manifest update performed by the last serialize() call."""
        return self._bundle_patch

    @property
    def image_base(self) -> int:
        """Preferred load address."""
        return self._opt_hdr.ImageBase

    @property
    def file_alignment(self) -> int:
        """File alignment for raw data."""
        return self._opt_hdr.FileAlignment

    @property
    def section_alignment(self) -> int:
        """Section alignment in memory."""
        return self._opt_hdr.SectionAlignment

    @property
    def section_table_offset(self) -> int:
        """File offset of the first section header."""
        return self._section_table_offset

    @property
    def data_directory_count(self) -> int:
        """Number of data directory slots between optional header and section table."""
        return len(self._data_dirs)

    # =========================================================================
    # Parsing (internal)
    # =========================================================================

    def _validate_alignment(self, field_name: str, value: int) -> None:
        if not is_power_of_two(value):
            raise FormatError(f"{field_name} 0x{value:x} is not a power of 2")

    def _parse_data_directories(self) -> list[DataDirectory]:
        """Parse all data directories."""
        num_dirs = (
            self._section_table_offset - self._data_dir_offset
        ) // DATA_DIRECTORY_SIZE
        if num_dirs > self.MAX_NUMBER_OF_DATA_DIRECTORIES:
            raise FormatError(
                f"Data directory count ({num_dirs}) exceeds maximum "
                f"({self.MAX_NUMBER_OF_DATA_DIRECTORIES})"
            )
        dirs = []
        for i in range(num_dirs):
            dir_offset = self._data_dir_offset + i * DATA_DIRECTORY_SIZE
            dirs.append(DataDirectory.from_bytes(self._data, dir_offset))
        return dirs

    def _parse_sections(self) -> list[SectionHeader]:
        """Parse all section headers."""
        num_sections = self._coff_hdr.NumberOfSections
        if num_sections > self.MAX_NUMBER_OF_SECTIONS:
            raise FormatError(
                f"NumberOfSections ({num_sections}) exceeds maximum "
                f"({self.MAX_NUMBER_OF_SECTIONS})"
            )
        sections = []
        for i in range(num_sections):
            sect_offset = self._section_table_offset + i * SECTION_HEADER_SIZE
            sections.append(SectionHeader.from_bytes(self._data, sect_offset))
        return sections

    # =========================================================================
    # Query Operations
    # =========================================================================

    def find_section(self, name: str) -> SectionInfo | None:
        """Find an existing section by name.

        Args:
            name: Section name (e.g., ".text"). Names longer than 8
                  characters are compared by their first 8.

        Returns:
            SectionInfo if found, None otherwise
        """
        search_name = name[:8]
        for idx, shdr in enumerate(self._sections):
            if shdr.name_str == search_name:
                return SectionInfo(index=idx, name=shdr.name_str, header=shdr)
        return None

    def has_section(self, name: str) -> bool:
        """Check existing and staged sections for a name."""
        if self.find_section(name) is not None:
            return True
        return any(s.name == name[:8] for s in self._new_sections)

    def iter_sections(self) -> Iterator[SectionInfo]:
        """Iterate over all original sections."""
        for idx, shdr in enumerate(self._sections):
            yield SectionInfo(index=idx, name=shdr.name_str, header=shdr)

    def get_data_directory(self, index: int) -> DataDirectory | None:
        """Get a data directory by index (None if the slot does not exist)."""
        if 0 <= index < len(self._data_dirs):
            return self._data_dirs[index]
        return None

    def set_data_directory(self, index: int, directory: DataDirectory) -> None:
        """Replace a data directory slot. Written out by serialize().

        Raises:
            FormatError: If the image has no such slot
        """
        if not 0 <= index < len(self._data_dirs):
            raise FormatError(
                f"Image has {len(self._data_dirs)} data directories, "
                f"cannot set index {index}"
            )
        self._data_dirs[index] = directory
        self._modifications.append(
            Modification(
                operation="set_data_directory",
                file_offset=self._data_dir_offset + index * DATA_DIRECTORY_SIZE,
                size=DATA_DIRECTORY_SIZE,
                description=(
                    f"data directory {index} -> RVA 0x{directory.VirtualAddress:x} "
                    f"size 0x{directory.Size:x}"
                ),
            )
        )

    # =========================================================================
    # Address Conversion
    # =========================================================================

    def rva_to_file_offset(self, rva: int) -> int | None:
        """Convert RVA to file offset using section table.

        The first section (in table order) whose virtual range contains the
        RVA is used.

        Args:
            rva: Relative virtual address

        Returns:
            File offset, or None when no section contains the RVA or the RVA
            lies in the part of a section that has no raw data behind it.
        """
        for shdr in self._sections:
            if shdr.contains_rva(rva):
                section_offset = rva - shdr.VirtualAddress
                if section_offset >= shdr.SizeOfRawData:
                    return None
                return shdr.PointerToRawData + section_offset
        return None

    def file_offset_to_rva(self, offset: int) -> int | None:
        """Convert file offset to RVA.

        Returns:
            RVA if offset is in a section's raw data, None otherwise
        """
        for shdr in self._sections:
            if shdr.contains_file_offset(offset):
                return shdr.VirtualAddress + (offset - shdr.PointerToRawData)
        return None

    def is_zero_fill_rva(self, rva: int) -> bool:
        """Check if an RVA lies past its section's raw data.

        The loader zero-fills that part of the section, so it reads as 0
        but has no bytes in the file that could be rewritten.
        """
        for shdr in self._sections:
            if shdr.contains_rva(rva):
                return rva - shdr.VirtualAddress >= shdr.SizeOfRawData
        return False

    # =========================================================================
    # Read / Write Operations
    # =========================================================================

    def read_bytes_at_rva(self, rva: int, size: int) -> bytes:
        """Read size bytes starting at an RVA.

        Raises:
            FormatError: If the range is not fully backed by one section's
                raw data
        """
        offset = self.rva_to_file_offset(rva)
        if offset is None:
            raise FormatError(f"RVA 0x{rva:x} not in any section")
        if size > 0:
            last = self.rva_to_file_offset(rva + size - 1)
            if last != offset + size - 1 or last >= len(self._data):
                raise FormatError(
                    f"Range RVA 0x{rva:x} + 0x{size:x} crosses a section boundary"
                )
        return bytes(self._data[offset : offset + size])

    def read_u32_at_rva(self, rva: int) -> int:
        """Read a 4-byte unsigned integer at an RVA."""
        return struct.unpack("<I", self.read_bytes_at_rva(rva, 4))[0]

    def read_cstring(self, rva: int) -> str:
        """Read a NUL-terminated string at an RVA.

        Raises:
            FormatError: If the RVA does not resolve or the string runs off
                the end of the file
        """
        offset = self.rva_to_file_offset(rva)
        if offset is None:
            raise FormatError(f"String RVA 0x{rva:x} not in any section")
        end = self._data.find(b"\x00", offset)
        if end < 0:
            raise FormatError(f"Unterminated string at RVA 0x{rva:x}")
        return cstring_from_bytes(bytes(self._data[offset:end]))

    def write_u32_at_rva(self, rva: int, value: int, description: str = "") -> None:
        """Write a 4-byte unsigned integer at an RVA."""
        offset = self.rva_to_file_offset(rva)
        if offset is None:
            raise FormatError(f"RVA 0x{rva:x} not in any section")
        if offset + 4 > len(self._data):
            raise FormatError(
                f"Write would exceed file bounds: offset=0x{offset:x}, "
                f"file_size=0x{len(self._data):x}"
            )

        struct.pack_into("<I", self._data, offset, value)
        self._modifications.append(
            Modification(
                operation="write_u32",
                file_offset=offset,
                size=4,
                description=description or f"write u32 0x{value:x} at RVA 0x{rva:x}",
            )
        )

    # =========================================================================
    # Layout Information
    # =========================================================================

    def _last_section(self) -> SectionHeader:
        if not self._sections:
            raise FormatError("Image has no sections")
        return self._sections[-1]

    def get_original_end_offset(self) -> int:
        """End of the last original section's raw data.

        Anything past this offset is overlay data that gets moved behind
        the new sections.
        """
        return self._last_section().end_file_offset

    def get_max_section_end_offset(self) -> int:
        """Get the maximum file offset used by any section."""
        max_offset = 0
        for shdr in self._sections:
            if shdr.SizeOfRawData > 0:
                max_offset = max(max_offset, shdr.end_file_offset)
        return max_offset

    def _section_headers_limit(self) -> int:
        """First file offset the section table must not grow into."""
        limit = self._opt_hdr.SizeOfHeaders
        for shdr in self._sections:
            if shdr.SizeOfRawData > 0:
                limit = min(limit, shdr.PointerToRawData)
                break
        return limit

    # =========================================================================
    # Section Addition
    # =========================================================================

    def append_section(
        self,
        name: str,
        characteristics: int = IMAGE_SCN_MEM_READ | IMAGE_SCN_CNT_INITIALIZED_DATA,
    ) -> SectionBuilder:
        """Stage a new section after the last one.

        The previously staged section (if any) is closed. Placement:
        RVA = round_up(end RVA of previous, SectionAlignment) and
        file offset = round_up(end of previous on disk, FileAlignment), where
        "previous" is the last staged section of this session, or else the
        last section in the original section table.

        Args:
            name: Section name (max 8 chars)
            characteristics: IMAGE_SCN_* flags (default: readable initialized data)

        Returns:
            Open SectionBuilder to write the section content into

        Raises:
            ConflictingState: If a section with this name already exists
            FormatError: If there is no room for another section header or
                the image layout is unsupported
        """
        if self.has_section(name):
            raise ConflictingState(f"Section '{name[:8]}' already exists")

        # Check space for the new section header
        header_count = len(self._sections) + len(self._new_sections) + 1
        headers_end = self._section_table_offset + header_count * SECTION_HEADER_SIZE
        limit = self._section_headers_limit()
        if headers_end > limit:
            raise FormatError(
                f"No space for new section header. "
                f"Headers would end at 0x{headers_end:x}, "
                f"section data starts at 0x{limit:x}."
            )

        if self._new_sections:
            prior = self._new_sections[-1]
            prior.close()
            prior_end_rva = prior.end_rva
            prior_end_offset = prior.end_file_offset
        else:
            last = self._last_section()
            if self.get_max_section_end_offset() > last.end_file_offset:
                raise FormatError(
                    f"Last section '{last.name_str}' does not hold the last "
                    "raw data in the file; cannot append after it"
                )
            prior_end_rva = last.end_rva
            prior_end_offset = last.end_file_offset

        rva = round_up_to_alignment(prior_end_rva, self.section_alignment)
        file_offset = round_up_to_alignment(prior_end_offset, self.file_alignment)

        builder = SectionBuilder(
            name=name,
            characteristics=characteristics,
            rva=rva,
            file_offset=file_offset,
            file_alignment=self.file_alignment,
        )
        self._new_sections.append(builder)

        logger.debug(
            "Staged section %s at RVA 0x%x, file offset 0x%x", name, rva, file_offset
        )
        self._modifications.append(
            Modification(
                operation="append_section",
                file_offset=file_offset,
                size=0,
                description=f"append section '{name}' at RVA 0x{rva:x}",
            )
        )
        return builder

    # =========================================================================
    # Serialization
    # =========================================================================

    def _updated_headers(self) -> tuple[CoffHeader, OptionalHeader64, list[SectionHeader]]:
        """Headers as they should appear in the output image."""
        coff = dataclasses.replace(self._coff_hdr)
        opt = dataclasses.replace(self._opt_hdr)
        new_headers = []

        for section in self._new_sections:
            if section.characteristics & IMAGE_SCN_CNT_INITIALIZED_DATA:
                opt.SizeOfInitializedData += section.size_on_disk
            if section.characteristics & IMAGE_SCN_CNT_UNINITIALIZED_DATA:
                opt.SizeOfUninitializedData += section.size_on_disk
            if section.characteristics & IMAGE_SCN_CNT_CODE:
                opt.SizeOfCode += section.size_on_disk
            opt.SizeOfImage += section.size_on_disk
            new_headers.append(section.to_section_header())

        if self._new_sections:
            # The loader requires SizeOfImage to cover the last section in memory
            required = round_up_to_alignment(
                self._new_sections[-1].end_rva, self.section_alignment
            )
            opt.SizeOfImage = max(opt.SizeOfImage, required)

        coff.NumberOfSections += len(new_headers)
        opt.CheckSum = 0
        return coff, opt, new_headers

    def serialize(self) -> bytes:
        """Produce the complete output image.

        Closes the last staged section. The model itself is left unchanged,
        so calling this twice yields the same bytes.

        Returns:
            New image bytes
        """
        if self._new_sections:
            self._new_sections[-1].close()

        out = bytearray(self._data)
        coff, opt, new_headers = self._updated_headers()

        coff.write_to(out, self._pe_offset + 4)
        opt.write_to(out, self._opt_offset)
        for i, dd in enumerate(self._data_dirs):
            dd.write_to(out, self._data_dir_offset + i * DATA_DIRECTORY_SIZE)
        first_new = self._coff_hdr.NumberOfSections
        for i, shdr in enumerate(new_headers):
            offset = self._section_table_offset + (first_new + i) * SECTION_HEADER_SIZE
            shdr.write_to(out, offset)

        self._bundle_patch = None
        if not self._new_sections:
            return bytes(out)

        original_end = self.get_original_end_offset()
        trailing = bytes(self._data[original_end:])
        del out[original_end:]
        if len(out) < original_end:
            out.extend(b"\x00" * (original_end - len(out)))

        for section in self._new_sections:
            if len(out) > section.file_offset:
                raise FormatError(
                    f"Section {section.name} file offset 0x{section.file_offset:x} "
                    f"overlaps earlier data ending at 0x{len(out):x}"
                )
            out.extend(b"\x00" * (section.file_offset - len(out)))
            out.extend(section.content)
            out.extend(b"\x00" * (section.size_on_disk - section.size))

        delta = len(out) - original_end
        if trailing:
            out.extend(trailing)
            logger.debug(
                "Moved 0x%x bytes of trailing data by 0x%x", len(trailing), delta
            )
            self._bundle_patch = patch_bundle_manifest(self._original, out, delta)

        logger.debug(
            "Serialized image: %d new section(s), size 0x%x -> 0x%x",
            len(self._new_sections),
            len(self._data),
            len(out),
        )
        return bytes(out)

    def save(self, path: Path, mode: int | None = None) -> int:
        """Serialize and write the image to a file.

        The output is computed completely in memory before the file is
        opened, so a failure never leaves a partially written image.

        Args:
            path: Output file path
            mode: File mode to set. If None, does not set mode.

        Returns:
            Number of bytes written
        """
        output = self.serialize()
        path.write_bytes(output)
        if mode is not None:
            os.chmod(path, mode)
        return len(output)
