"""
.NET single-file bundle manifest support.

Publishing a .NET application as a single file appends every dependency,
configuration file and the bundle manifest to the end of the apphost PE.
The apphost finds the manifest through a 64-bit file offset stored right
before a fixed 32-byte signature, and the manifest in turn records absolute
file offsets for each embedded file. When new sections push the appended
data further into the file, all of these offsets have to move by the same
amount or the apphost will fail to locate its payload.

Manifest layout (little-endian, strings are 7-bit length-prefixed UTF-8):

    u32 major_version
    u32 minor_version
    i32 file_count
    str bundle_id
    if major_version >= 2:
        i64 deps_json_offset      (patched)
        i64 deps_json_size
        i64 runtime_config_offset (patched)
        i64 runtime_config_size
        u64 flags
    file_count times:
        i64 offset                (patched)
        i64 size
        i64 compressed_size       (major_version >= 6 only)
        u8  type
        str relative_path

Layout follows the .NET runtime's Microsoft.NET.HostModel bundle format.
"""

import logging
import struct
from dataclasses import dataclass

from ..errors import FormatError
from .search import compute_failure_table, find_bytes

logger = logging.getLogger(__name__)

# SHA-256 of ".net core bundle"
BUNDLE_SIGNATURE = bytes(
    [
        0x8B, 0x12, 0x02, 0xB9, 0x6A, 0x61, 0x20, 0x38,
        0x72, 0x7B, 0x93, 0x02, 0x14, 0xD7, 0xA0, 0x32,
        0x13, 0xF5, 0xB9, 0xE6, 0xEF, 0xAE, 0x33, 0x18,
        0xEE, 0x3B, 0x2D, 0xCE, 0x24, 0xB3, 0x6A, 0xAE,
    ]
)  # fmt: skip
MANIFEST_POINTER_SIZE = 8  # i64 stored right before the signature

_SIGNATURE_TABLE = compute_failure_table(BUNDLE_SIGNATURE)


@dataclass
class BundlePatchResult:
    """Summary of a bundle manifest update."""

    manifest_offset: int  # Original file offset of the manifest
    major_version: int
    minor_version: int
    file_count: int
    bundle_id: str
    offsets_patched: int  # Manifest pointer included


class _ManifestReader:
    """Sequential little-endian reader over the original image bytes."""

    def __init__(self, data: bytes | bytearray, position: int):
        self._data = data
        self.position = position

    def _take(self, fmt: str, what: str):
        size = struct.calcsize(fmt)
        if self.position < 0 or self.position + size > len(self._data):
            raise FormatError(
                f"Bundle manifest truncated reading {what} at 0x{self.position:x}"
            )
        (value,) = struct.unpack_from(fmt, self._data, self.position)
        self.position += size
        return value

    def read_u8(self, what: str) -> int:
        return self._take("<B", what)

    def read_u32(self, what: str) -> int:
        return self._take("<I", what)

    def read_i32(self, what: str) -> int:
        return self._take("<i", what)

    def read_i64(self, what: str) -> int:
        return self._take("<q", what)

    def read_u64(self, what: str) -> int:
        return self._take("<Q", what)

    def read_string(self, what: str) -> str:
        """Read a string prefixed with its 7-bit encoded byte length."""
        length = 0
        shift = 0
        while True:
            byte = self.read_u8(what)
            length |= (byte & 0x7F) << shift
            if not byte & 0x80:
                break
            shift += 7
            if shift >= 35:
                raise FormatError(f"Bad string length prefix for {what}")

        end = self.position + length
        if end > len(self._data):
            raise FormatError(
                f"Bundle manifest truncated reading {what} at 0x{self.position:x}"
            )
        raw = bytes(self._data[self.position : end])
        self.position = end
        return raw.decode("utf-8", errors="replace")


def find_bundle_manifest_offset(data: bytes | bytearray) -> int | None:
    """Locate the bundle manifest of a single-file .NET apphost.

    Args:
        data: Complete image bytes

    Returns:
        File offset of the manifest, or None if the image has no bundle
    """
    signature_pos = find_bytes(BUNDLE_SIGNATURE, data, _SIGNATURE_TABLE)
    if signature_pos < MANIFEST_POINTER_SIZE:
        return None

    pointer_pos = signature_pos - MANIFEST_POINTER_SIZE
    (manifest_offset,) = struct.unpack_from("<q", data, pointer_pos)
    if manifest_offset == 0:
        return None
    return manifest_offset


def patch_bundle_manifest(
    original: bytes | bytearray,
    output: bytearray,
    delta: int,
) -> BundlePatchResult | None:
    """Shift every file offset recorded by a bundle manifest.

    The manifest is always read from the original bytes, and every corrected
    value is written into output at its original position plus delta (the
    manifest pointer itself stays at its original position because it lives
    inside the PE image, ahead of any inserted data).

    The manifest is parsed completely before output is touched, so a
    truncated manifest raises without leaving a half-patched buffer.

    Args:
        original: Image bytes as loaded, before any edit
        output: Serialized image, with the appended data already moved
        delta: Number of bytes inserted before the appended data

    Returns:
        BundlePatchResult, or None if the image contains no bundle

    Raises:
        FormatError: If the manifest is truncated or a patched field falls
            outside the output buffer
    """
    signature_pos = find_bytes(BUNDLE_SIGNATURE, original, _SIGNATURE_TABLE)
    if signature_pos < 0:
        return None
    if signature_pos < MANIFEST_POINTER_SIZE:
        logger.debug("Bundle signature at 0x%x has no room for a pointer", signature_pos)
        return None

    pointer_pos = signature_pos - MANIFEST_POINTER_SIZE
    (manifest_offset,) = struct.unpack_from("<q", original, pointer_pos)
    if manifest_offset == 0:
        logger.debug("Bundle signature found but manifest offset is 0")
        return None

    # (output position, new value) pairs, applied only once parsing succeeded
    patches: list[tuple[int, int]] = [(pointer_pos, manifest_offset + delta)]

    reader = _ManifestReader(original, manifest_offset)

    def read_offset_and_update(what: str) -> None:
        position = reader.position
        value = reader.read_i64(what)
        if value > 0:
            patches.append((position + delta, value + delta))

    major_version = reader.read_u32("major version")
    minor_version = reader.read_u32("minor version")
    file_count = reader.read_i32("file count")
    bundle_id = reader.read_string("bundle id")

    if major_version >= 2:
        read_offset_and_update("deps.json offset")
        reader.read_i64("deps.json size")
        read_offset_and_update("runtimeconfig.json offset")
        reader.read_i64("runtimeconfig.json size")
        reader.read_u64("flags")

    for i in range(file_count):
        read_offset_and_update(f"file {i} offset")
        reader.read_i64(f"file {i} size")
        if major_version >= 6:
            reader.read_i64(f"file {i} compressed size")
        reader.read_u8(f"file {i} type")
        reader.read_string(f"file {i} path")

    for position, _ in patches:
        if position < 0 or position + 8 > len(output):
            raise FormatError(
                f"Bundle offset field at 0x{position:x} is outside the output "
                f"image (size 0x{len(output):x})"
            )
    for position, value in patches:
        struct.pack_into("<q", output, position, value)

    logger.debug(
        "Patched bundle manifest v%d.%d (%d files, id %r) at 0x%x by %+d bytes",
        major_version,
        minor_version,
        file_count,
        bundle_id,
        manifest_offset,
        delta,
    )

    return BundlePatchResult(
        manifest_offset=manifest_offset,
        major_version=major_version,
        minor_version=minor_version,
        file_count=file_count,
        bundle_id=bundle_id,
        offsets_patched=len(patches),
    )
