"""Tests for PE32+ structural verification."""

import pytest
import struct
from pathlib import Path

from nvpatch.pe import (
    PEImage,
    PEVerifier,
    VerificationResult,
    verify_all,
    verify_with_llvm_objdump,
)

from pe_test_utils import (
    DATA,
    E_LFANEW,
    SectionSpec,
    build_export_data,
    build_pe,
    section_table_offset,
)


class TestVerificationResult:
    """Tests for VerificationResult bookkeeping."""

    def test_errors_fail(self):
        """Test adding an error marks the result failed."""
        result = VerificationResult()
        assert result.passed
        result.add_warning("just a warning")
        assert result.passed
        result.add_error("broken")
        assert not result.passed

    def test_merge(self):
        """Test merging results combines messages and status."""
        result = VerificationResult()
        other = VerificationResult()
        other.add_error("e1")
        other.add_warning("w1")
        result.merge(other)
        assert not result.passed
        assert result.errors == ["e1"]
        assert result.warnings == ["w1"]

    def test_str(self):
        """Test the human-readable summary."""
        result = VerificationResult()
        result.add_error("bad thing")
        text = str(result)
        assert "Verification FAILED" in text
        assert "bad thing" in text
        assert str(VerificationResult()).startswith("Verification PASSED")


class TestPEVerifier:
    """Tests for PEVerifier checks."""

    def test_valid_image_passes(self, exporting_image: bytes):
        """Test a well-formed image passes every check."""
        result = PEVerifier.verify_data(exporting_image)
        assert result.passed, str(result)

    def test_verify_file(self, plain_image: bytes, write_image):
        """Test verifying a file on disk."""
        assert PEVerifier.verify(write_image(plain_image)).passed

    def test_patched_image_passes(self, plain_image: bytes):
        """Test an image with a new section passes every check."""
        image = PEImage(plain_image)
        image.append_section(".nvpatch").write(bytes(0x1800))
        result = PEVerifier.verify_data(image.serialize())
        assert result.passed, str(result)

    def test_unparseable_image(self):
        """Test garbage input fails instead of raising."""
        result = PEVerifier.verify_data(b"not a PE file at all" * 10)
        assert not result.passed
        assert "Cannot parse image" in result.errors[0]

    def test_overlapping_sections(self, plain_image: bytes):
        """Test overlapping raw data ranges are reported."""
        data = bytearray(plain_image)
        # Point .data's raw data into .text
        struct.pack_into("<I", data, section_table_offset() + 40 + 20, 0x400)
        result = PEVerifier.verify_data(data)
        assert not result.passed
        assert any("overlapping" in e for e in result.errors)

    def test_misaligned_raw_pointer(self, plain_image: bytes):
        """Test a PointerToRawData off the FileAlignment grid."""
        data = bytearray(plain_image)
        struct.pack_into("<I", data, section_table_offset() + 40 + 20, 0x610)
        result = PEVerifier(PEImage(data)).check_section_alignment()
        assert not result.passed
        assert "not aligned to FileAlignment" in result.errors[0]

    def test_raw_data_beyond_file(self, plain_image: bytes):
        """Test a section whose raw data runs past the end of the file."""
        data = bytearray(plain_image)
        struct.pack_into("<I", data, section_table_offset() + 40 + 16, 0x1000)
        result = PEVerifier(PEImage(data)).check_section_offsets_in_bounds()
        assert not result.passed
        assert "extends beyond file" in result.errors[0]

    def test_size_of_image_too_small(self, plain_image: bytes):
        """Test SizeOfImage not covering the last section."""
        data = bytearray(plain_image)
        struct.pack_into("<I", data, E_LFANEW + 24 + 56, 0x2000)
        result = PEVerifier(PEImage(data)).check_size_of_image()
        assert not result.passed
        assert "SizeOfImage 0x2000" in result.errors[0]

    def test_small_file_alignment_warns(self):
        """Test a FileAlignment below 512 is only a warning."""
        data = build_pe([SectionSpec(".data", b"\x01", DATA)], file_alignment=0x100)
        result = PEVerifier(PEImage(data)).check_file_alignment()
        assert result.passed
        assert "smaller than standard 512" in result.warnings[0]

    def test_export_directory_outside_sections(self):
        """Test an export directory RVA no section backs."""
        data = build_pe(
            [SectionSpec(".data", b"\x01", DATA)], data_directories={0: (0x9000, 0x40)}
        )
        result = PEVerifier(PEImage(data)).check_data_directory_bounds()
        assert not result.passed
        assert "Export directory RVA 0x9000" in result.errors[0]

    def test_unsorted_export_names(self):
        """Test a name pointer table out of order is reported."""
        edata, size = build_export_data(
            0x2000, "x.dll", [(1, "Zulu", 0x1000), (2, "Alpha", 0x1000)], sort_names=False
        )
        data = build_pe(
            [SectionSpec(".data", bytes(8), DATA), SectionSpec(".edata", edata)],
            data_directories={0: (0x2000, size)},
        )
        result = PEVerifier(PEImage(data)).check_export_table()
        assert not result.passed
        assert "not sorted" in result.errors[0]

    def test_broken_export_table(self):
        """Test an export table that cannot be decoded is reported."""
        edata, size = build_export_data(0x2000, "x.dll", [(1, "Foo", 0x1000)])
        edata = bytearray(edata)
        struct.pack_into("<H", edata, len(edata) - 2, 9)  # Name -> ordinal 10
        data = build_pe(
            [SectionSpec(".data", bytes(8), DATA), SectionSpec(".edata", bytes(edata))],
            data_directories={0: (0x2000, size)},
        )
        result = PEVerifier(PEImage(data)).check_export_table()
        assert not result.passed
        assert result.errors[0].startswith("Export table:")


class TestExternalTools:
    """Tests for external tool verification."""

    def test_missing_tool_warns(self, plain_image: bytes, write_image):
        """Test a missing llvm-objdump is a warning, not a failure."""
        path = write_image(plain_image)
        result = verify_with_llvm_objdump(path, llvm_objdump=Path("/nonexistent/llvm-objdump"))
        assert result.passed
        assert result.warnings == ["llvm-objdump not found"]

    def test_verify_all_merges_results(self, plain_image: bytes, write_image):
        """Test verify_all combines structural checks with the tool result."""
        path = write_image(plain_image)
        result = verify_all(path, llvm_objdump=Path("/nonexistent/llvm-objdump"))
        assert result.passed
        assert result.warnings == ["llvm-objdump not found"]

    def test_verify_all_structural_failure(self, write_image):
        """Test verify_all fails when the image does not parse."""
        path = write_image(b"MZ" + bytes(0x100))
        result = verify_all(path, llvm_objdump=Path("/nonexistent/llvm-objdump"))
        assert not result.passed
