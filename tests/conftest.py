import pytest
import pathlib
import struct

from pe_test_utils import (
    DATA,
    EDATA_RVA,
    FUNCTION_RVA,
    SLOT_A_RVA,
    SLOT_B_RVA,
    TEXT,
    TEXT_CONTENT,
    SectionSpec,
    build_export_data,
    build_pe,
)


def _image_with_exports(entries, data=struct.pack("<II", 0, 0)) -> bytes:
    edata, size = build_export_data(EDATA_RVA, "app.exe", entries)
    return build_pe(
        [
            SectionSpec(".text", TEXT_CONTENT, TEXT),
            SectionSpec(".data", data, DATA),
            SectionSpec(".edata", edata),
        ],
        data_directories={0: (EDATA_RVA, size)},
    )


@pytest.fixture
def plain_image() -> bytes:
    """Image with code and data but no export directory."""
    return build_pe(
        [
            SectionSpec(".text", TEXT_CONTENT, TEXT),
            SectionSpec(".data", struct.pack("<II", 0, 0), DATA),
        ]
    )


@pytest.fixture
def exporting_image() -> bytes:
    """Image exporting both GPU symbols with value 0 and a function."""
    return _image_with_exports(
        [
            (1, "AmdPowerXpressRequestHighPerformance", SLOT_B_RVA),
            (2, "NvOptimusEnablement", SLOT_A_RVA),
            (3, "Run", FUNCTION_RVA),
        ]
    )


@pytest.fixture
def partial_image() -> bytes:
    """Image exporting NvOptimusEnablement (value 1) and a function only."""
    return _image_with_exports(
        [
            (1, "NvOptimusEnablement", SLOT_A_RVA),
            (2, "Run", FUNCTION_RVA),
        ],
        data=struct.pack("<II", 1, 0),
    )


@pytest.fixture
def write_image(tmp_path: pathlib.Path):
    """Writes image bytes to a file in tmp_path and returns its path."""

    def _write(data: bytes, name: str = "app.exe") -> pathlib.Path:
        path = tmp_path / name
        path.write_bytes(data)
        return path

    return _write
