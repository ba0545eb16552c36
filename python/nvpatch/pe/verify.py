"""
PE32+ verification utilities.

The PEVerifier class provides structural validation for patched images,
catching layout mistakes that would make the loader reject the file or
resolve exports incorrectly.

This includes both internal structural checks and external tool invocation.
"""

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from ..errors import PatchError
from .exports import ExportTable
from .image import PEImage
from .types import (
    IMAGE_DIRECTORY_ENTRY_BASERELOC,
    IMAGE_DIRECTORY_ENTRY_EXPORT,
    IMAGE_DIRECTORY_ENTRY_IMPORT,
    ExportDirectoryTable,
    cstring_to_bytes,
    is_power_of_two,
    round_up_to_alignment,
)


@dataclass
class VerificationResult:
    """Result of image verification."""

    passed: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add_error(self, msg: str) -> None:
        """Add an error (verification failed)."""
        self.errors.append(msg)
        self.passed = False

    def add_warning(self, msg: str) -> None:
        """Add a warning (verification passed but with concerns)."""
        self.warnings.append(msg)

    def merge(self, other: "VerificationResult") -> None:
        """Merge another result into this one."""
        if not other.passed:
            self.passed = False
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)

    def __str__(self) -> str:
        """Human-readable summary."""
        lines = ["Verification PASSED" if self.passed else "Verification FAILED"]

        if self.errors:
            lines.append(f"Errors ({len(self.errors)}):")
            for e in self.errors:
                lines.append(f"  - {e}")

        if self.warnings:
            lines.append(f"Warnings ({len(self.warnings)}):")
            for w in self.warnings:
                lines.append(f"  - {w}")

        return "\n".join(lines)


class PEVerifier:
    """PE32+ image verification.

    Usage:
        result = PEVerifier.verify(Path("app.exe"))
        if not result.passed:
            print(result)
    """

    def __init__(self, image: PEImage):
        self._image = image

    @classmethod
    def verify(cls, path: Path) -> VerificationResult:
        """Verify a PE file on disk."""
        return cls.verify_data(path.read_bytes())

    @classmethod
    def verify_data(cls, data: bytes | bytearray) -> VerificationResult:
        """Verify PE data in memory.

        Images that cannot even be parsed produce a failed result rather
        than an exception.
        """
        try:
            image = PEImage(data)
        except PatchError as e:
            result = VerificationResult()
            result.add_error(f"Cannot parse image: {e}")
            return result
        return cls(image).run_all_checks()

    def run_all_checks(self) -> VerificationResult:
        """Run all internal structural checks."""
        result = VerificationResult()

        checks: list[Callable[[], VerificationResult]] = [
            self.check_no_overlapping_sections,
            self.check_section_alignment,
            self.check_section_offsets_in_bounds,
            self.check_data_directory_bounds,
            self.check_size_of_image,
            self.check_file_alignment,
            self.check_export_table,
        ]

        for check in checks:
            result.merge(check())

        return result

    # =========================================================================
    # Structural Checks
    # =========================================================================

    def check_no_overlapping_sections(self) -> VerificationResult:
        """Check that no two sections have overlapping file regions."""
        result = VerificationResult()

        sections = [s for s in self._image.iter_sections() if s.raw_size > 0]
        for i, sect1 in enumerate(sections):
            start1 = sect1.file_offset
            end1 = start1 + sect1.raw_size

            for sect2 in sections[i + 1 :]:
                start2 = sect2.file_offset
                end2 = start2 + sect2.raw_size

                if start1 < end2 and start2 < end1:
                    result.add_error(
                        f"Sections {sect1.name} and {sect2.name} have overlapping "
                        f"file ranges: [{start1:#x}, {end1:#x}) and [{start2:#x}, {end2:#x})"
                    )

        return result

    def check_section_alignment(self) -> VerificationResult:
        """Check section alignment constraints.

        - PointerToRawData must be aligned to FileAlignment
        - VirtualAddress must be aligned to SectionAlignment
        """
        result = VerificationResult()

        file_align = self._image.file_alignment
        sect_align = self._image.section_alignment

        for section in self._image.iter_sections():
            if section.raw_size > 0 and section.file_offset % file_align != 0:
                result.add_error(
                    f"Section {section.name} PointerToRawData 0x{section.file_offset:x} "
                    f"not aligned to FileAlignment 0x{file_align:x}"
                )

            if section.rva % sect_align != 0:
                result.add_warning(
                    f"Section {section.name} VirtualAddress 0x{section.rva:x} "
                    f"not aligned to SectionAlignment 0x{sect_align:x}"
                )

        return result

    def check_section_offsets_in_bounds(self) -> VerificationResult:
        """Check that section raw data is within file bounds."""
        result = VerificationResult()

        file_size = len(self._image.original_data)
        for section in self._image.iter_sections():
            if section.raw_size == 0:
                continue

            end_offset = section.file_offset + section.raw_size
            if end_offset > file_size:
                result.add_error(
                    f"Section {section.name} raw data extends beyond file: "
                    f"ends at 0x{end_offset:x}, file size is 0x{file_size:x}"
                )

        return result

    def check_data_directory_bounds(self) -> VerificationResult:
        """Check that key data directories point into sections."""
        result = VerificationResult()

        for idx, name in [
            (IMAGE_DIRECTORY_ENTRY_EXPORT, "Export"),
            (IMAGE_DIRECTORY_ENTRY_IMPORT, "Import"),
            (IMAGE_DIRECTORY_ENTRY_BASERELOC, "BaseReloc"),
        ]:
            dd = self._image.get_data_directory(idx)
            if dd is None or not dd.is_present:
                continue

            offset = self._image.rva_to_file_offset(dd.VirtualAddress)
            if offset is None:
                result.add_error(
                    f"{name} directory RVA 0x{dd.VirtualAddress:x} not in any section"
                )
                continue

            end_rva = dd.VirtualAddress + dd.Size
            if dd.Size > 0 and self._image.rva_to_file_offset(end_rva - 1) is None:
                result.add_warning(
                    f"{name} directory end RVA 0x{end_rva:x} extends beyond section"
                )

        return result

    def check_size_of_image(self) -> VerificationResult:
        """Check SizeOfImage covers all sections."""
        result = VerificationResult()

        size_of_image = self._image.optional_header.SizeOfImage
        max_rva = 0
        for section in self._image.iter_sections():
            max_rva = max(max_rva, section.rva + section.virtual_size)

        expected_min = round_up_to_alignment(max_rva, self._image.section_alignment)
        if size_of_image < expected_min:
            result.add_error(
                f"SizeOfImage 0x{size_of_image:x} is smaller than "
                f"required 0x{expected_min:x} to cover all sections"
            )

        return result

    def check_file_alignment(self) -> VerificationResult:
        """Check FileAlignment is a power of 2 between 512 and 64K."""
        result = VerificationResult()

        file_align = self._image.file_alignment
        if not is_power_of_two(file_align):
            result.add_error(f"FileAlignment 0x{file_align:x} is not a power of 2")
        elif file_align < 512:
            result.add_warning(
                f"FileAlignment 0x{file_align:x} is smaller than standard 512"
            )
        elif file_align > 65536:
            result.add_warning(
                f"FileAlignment 0x{file_align:x} is larger than standard 64K"
            )

        return result

    def check_export_table(self) -> VerificationResult:
        """Check the export directory decodes and its names are sorted.

        The loader binary-searches the name pointer table, so an unsorted
        table makes lookups by name fail silently.
        """
        result = VerificationResult()

        try:
            exports = ExportTable.from_image(self._image)
        except PatchError as e:
            result.add_error(f"Export table: {e}")
            return result

        names = [cstring_to_bytes(e.name) for e in exports if e.name is not None]
        if sorted(names) != sorted(set(names)):
            result.add_error("Export table contains duplicate names")

        dd = self._image.get_data_directory(IMAGE_DIRECTORY_ENTRY_EXPORT)
        if dd is None or not dd.is_present:
            return result

        if self._image.rva_to_file_offset(dd.VirtualAddress) is None:
            return result

        # Decoding binds names by ordinal; re-read the raw pointer order
        header = ExportDirectoryTable.from_bytes(
            self._image.read_bytes_at_rva(dd.VirtualAddress, ExportDirectoryTable.SIZE)
        )
        raw_names = []
        for i in range(header.NumberOfNamePointers):
            name_rva = self._image.read_u32_at_rva(header.NamePointerRVA + 4 * i)
            raw_names.append(cstring_to_bytes(self._image.read_cstring(name_rva)))

        if raw_names != sorted(raw_names):
            result.add_error("Export name pointer table is not sorted by name")

        return result


# =============================================================================
# External Tool Verification
# =============================================================================


def verify_with_llvm_objdump(
    path: Path,
    llvm_objdump: Path | str = "llvm-objdump",
) -> VerificationResult:
    """Run llvm-objdump and check for warnings/errors.

    A missing tool produces a warning, not a failure.
    """
    result = VerificationResult()

    try:
        proc = subprocess.run(
            [str(llvm_objdump), "-h", "-p", str(path)],
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        result.add_warning("llvm-objdump not found")
        return result

    output = proc.stdout + proc.stderr
    warning_patterns = ["corrupt", "invalid", "warning:", "error:", "truncated"]

    for line in output.splitlines():
        lowered = line.lower()
        if any(pattern in lowered for pattern in warning_patterns):
            result.add_error(f"llvm-objdump: {line.strip()}")

    if proc.returncode != 0:
        result.add_error(f"llvm-objdump exited with code {proc.returncode}")

    return result


def verify_all(
    path: Path,
    llvm_objdump: Path | str = "llvm-objdump",
) -> VerificationResult:
    """Run internal checks and llvm-objdump on a PE image."""
    result = VerificationResult()
    result.merge(PEVerifier.verify(path))
    result.merge(verify_with_llvm_objdump(path, llvm_objdump))
    return result
