"""
Synthetic PE32+ images for testing.

Real Windows executables are large and toolchain dependent, so the tests
build minimal but structurally valid PE32+ images byte by byte. Every image
produced here uses the same fixed layout:

    0x000  DOS header stub ("MZ", e_lfanew = 0x80)
    0x080  "PE\\0\\0"
    0x084  COFF header (AMD64)
    0x098  Optional header (PE32+), followed by the data directories
    ...    Section table
    0x400  Section raw data (SizeOfHeaders), FileAlignment 0x200
           Section RVAs start at 0x1000, SectionAlignment 0x1000
    ...    Optional trailing (overlay) data

With section contents no larger than 0x1000 bytes, section i is mapped at
RVA 0x1000 * (i + 1), which lets tests compute RVAs for export tables before
the image is built.

Also provided:
- build_export_data: a complete export directory for a given base RVA
- make_bundled_image: an image carrying a .NET single-file bundle
- read_bundle_manifest: independent manifest reader used to check patching

Usage:
------
    from pe_test_utils import SectionSpec, build_pe, build_export_data

    edata, size = build_export_data(
        0x2000, "app.exe", [(1, "NvOptimusEnablement", 0x1000)]
    )
    image = build_pe(
        [SectionSpec(".data", struct.pack("<I", 1)), SectionSpec(".edata", edata)],
        data_directories={0: (0x2000, size)},
    )
"""

import struct
from dataclasses import dataclass

from nvpatch.pe.bundle import BUNDLE_SIGNATURE

E_LFANEW = 0x80
FILE_ALIGNMENT = 0x200
SECTION_ALIGNMENT = 0x1000
SIZE_OF_HEADERS = 0x400
IMAGE_BASE = 0x140000000
ORIGINAL_CHECKSUM = 0x1234

SCN_CODE = 0x00000020
SCN_INITIALIZED_DATA = 0x00000040
SCN_EXECUTE = 0x20000000
SCN_READ = 0x40000000
SCN_WRITE = 0x80000000

DATA = SCN_INITIALIZED_DATA | SCN_READ | SCN_WRITE
RDATA = SCN_INITIALIZED_DATA | SCN_READ
TEXT = SCN_CODE | SCN_EXECUTE | SCN_READ

# Layout of the shared conftest images:
#   .text  RVA 0x1000
#   .data  RVA 0x2000  (u32 slots at 0x2000 and 0x2004)
#   .edata RVA 0x3000  (when present)
TEXT_CONTENT = b"\x48\x31\xc0\xc3" + b"\xcc" * 12  # xor rax, rax; ret
FUNCTION_RVA = 0x1000
SLOT_A_RVA = 0x2000
SLOT_B_RVA = 0x2004
EDATA_RVA = 0x3000


@dataclass
class SectionSpec:
    """Section to place in a synthetic image."""

    name: str
    content: bytes
    characteristics: int = RDATA
    virtual_size: int | None = None  # Defaults to len(content)


def _round_up(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


def build_pe(
    sections: list[SectionSpec],
    data_directories: dict[int, tuple[int, int]] | None = None,
    num_data_directories: int = 16,
    trailing: bytes = b"",
    dll: bool = False,
    magic: int = 0x20B,
    file_alignment: int = FILE_ALIGNMENT,
    section_alignment: int = SECTION_ALIGNMENT,
    size_of_headers: int = SIZE_OF_HEADERS,
) -> bytes:
    """Build a PE32+ image.

    Args:
        sections: Sections in table order
        data_directories: Directory index -> (RVA, size)
        num_data_directories: Number of directory slots to reserve
        trailing: Overlay bytes appended after the last section
        dll: Set IMAGE_FILE_DLL
        magic: Optional header magic (0x10B produces a PE32 header)
        file_alignment: FileAlignment field, also used to lay out raw data
            (a non-positive value lays data out at 0x200)
        section_alignment: SectionAlignment field (a non-positive value
            lays sections out at 0x1000)
        size_of_headers: SizeOfHeaders and first raw data offset

    Returns:
        Complete image bytes
    """
    data_directories = data_directories or {}
    layout_file_align = file_alignment if file_alignment > 0 else FILE_ALIGNMENT
    layout_sect_align = section_alignment if section_alignment > 0 else SECTION_ALIGNMENT

    # Lay out sections
    headers = []
    rva = layout_sect_align
    file_offset = size_of_headers
    size_of_code = 0
    size_of_init = 0
    for sect in sections:
        virtual_size = sect.virtual_size if sect.virtual_size is not None else len(sect.content)
        raw_size = _round_up(len(sect.content), layout_file_align)
        headers.append((sect, virtual_size, rva, raw_size, file_offset))
        if sect.characteristics & SCN_CODE:
            size_of_code += raw_size
        if sect.characteristics & SCN_INITIALIZED_DATA:
            size_of_init += raw_size
        rva = _round_up(rva + max(virtual_size, 1), layout_sect_align)
        file_offset += raw_size
    size_of_image = rva

    size_of_optional_header = 112 + 8 * num_data_directories
    out = bytearray(size_of_headers)

    # DOS header
    out[0:2] = b"MZ"
    struct.pack_into("<I", out, 0x3C, E_LFANEW)

    # PE signature + COFF header
    characteristics = 0x0022 | (0x2000 if dll else 0)
    out[E_LFANEW : E_LFANEW + 4] = b"PE\x00\x00"
    struct.pack_into(
        "<HHIIIHH",
        out,
        E_LFANEW + 4,
        0x8664,
        len(sections),
        0,
        0,
        0,
        size_of_optional_header,
        characteristics,
    )

    # Optional header
    opt = E_LFANEW + 24
    struct.pack_into(
        "<HBBIIIIIQIIHHHHHH" "IIIIHHQQQQII",
        out,
        opt,
        magic,
        14,
        0,
        size_of_code,
        size_of_init,
        0,
        layout_sect_align if sections else 0,
        layout_sect_align if sections else 0,
        IMAGE_BASE,
        section_alignment,
        file_alignment,
        6,
        0,
        0,
        0,
        6,
        0,
        0,
        size_of_image,
        size_of_headers,
        ORIGINAL_CHECKSUM,
        3,
        0x8160,
        0x100000,
        0x1000,
        0x100000,
        0x1000,
        0,
        num_data_directories,
    )

    # Data directories
    dd_offset = opt + 112
    for index, (dd_rva, dd_size) in data_directories.items():
        struct.pack_into("<II", out, dd_offset + 8 * index, dd_rva, dd_size)

    # Section table
    table = opt + size_of_optional_header
    for i, (sect, virtual_size, sect_rva, raw_size, raw_ptr) in enumerate(headers):
        struct.pack_into(
            "<8sIIIIIIHHI",
            out,
            table + 40 * i,
            sect.name.encode("ascii"),
            virtual_size,
            sect_rva,
            raw_size,
            raw_ptr,
            0,
            0,
            0,
            0,
            sect.characteristics,
        )

    # Raw data
    for sect, _, _, raw_size, _ in headers:
        out.extend(sect.content)
        out.extend(b"\x00" * (raw_size - len(sect.content)))

    out.extend(trailing)
    return bytes(out)


def section_table_offset(num_data_directories: int = 16) -> int:
    """File offset of the section table in images from build_pe()."""
    return E_LFANEW + 24 + 112 + 8 * num_data_directories


def read_section_headers(data: bytes) -> list[dict]:
    """Decode the section table of an image (independent of nvpatch)."""
    (pe_offset,) = struct.unpack_from("<I", data, 0x3C)
    (count,) = struct.unpack_from("<H", data, pe_offset + 6)
    (opt_size,) = struct.unpack_from("<H", data, pe_offset + 20)
    table = pe_offset + 24 + opt_size
    result = []
    for i in range(count):
        name, vsize, rva, raw_size, raw_ptr, _, _, _, _, chars = struct.unpack_from(
            "<8sIIIIIIHHI", data, table + 40 * i
        )
        result.append(
            {
                "name": name.rstrip(b"\x00").decode("ascii"),
                "virtual_size": vsize,
                "rva": rva,
                "raw_size": raw_size,
                "raw_ptr": raw_ptr,
                "characteristics": chars,
            }
        )
    return result


def read_optional_field(data: bytes, fmt: str, offset: int) -> int:
    """Read one optional header field at an offset from the header start."""
    (pe_offset,) = struct.unpack_from("<I", data, 0x3C)
    (value,) = struct.unpack_from(fmt, data, pe_offset + 24 + offset)
    return value


def _name_bytes(name: str | bytes) -> bytes:
    return name if isinstance(name, bytes) else name.encode("ascii")


def build_export_data(
    base_rva: int,
    module_name: str,
    entries: list[tuple[int, str | None, int]],
    ordinal_base: int | None = None,
    sort_names: bool = True,
) -> tuple[bytes, int]:
    """Build a complete export directory.

    Layout: header, address table, names, module name, name pointer table,
    ordinal table (last, so tests can corrupt it easily).

    Args:
        base_rva: RVA the returned bytes will be mapped at
        module_name: Module name string
        entries: (ordinal, name or None, RVA) triples; a bytes name is
            written as is
        ordinal_base: OrdinalBase, defaults to the smallest ordinal
        sort_names: Emit the name pointer table sorted (as the loader expects)

    Returns:
        (directory bytes, directory size)
    """
    ordinals = [o for o, _, _ in entries]
    if ordinal_base is None:
        ordinal_base = min(ordinals) if ordinals else 1
    count = (max(ordinals) - ordinal_base + 1) if ordinals else 0

    body = bytearray()
    cursor = base_rva + 40

    eat_rva = cursor
    eat = [0] * count
    for ordinal, _, rva in entries:
        eat[ordinal - ordinal_base] = rva
    body += struct.pack(f"<{count}I", *eat)
    cursor += 4 * count

    name_rvas = {}
    for _, name, _ in entries:
        if name is not None:
            name_rvas[name] = cursor
            encoded = _name_bytes(name) + b"\x00"
            body += encoded
            cursor += len(encoded)

    module_rva = cursor
    encoded = module_name.encode("ascii") + b"\x00"
    body += encoded
    cursor += len(encoded)

    named = [(o, n) for o, n, _ in entries if n is not None]
    if sort_names:
        named.sort(key=lambda item: _name_bytes(item[1]))

    npt_rva = cursor
    for _, name in named:
        body += struct.pack("<I", name_rvas[name])
    cursor += 4 * len(named)

    ot_rva = cursor
    for ordinal, _ in named:
        body += struct.pack("<H", ordinal - ordinal_base)
    cursor += 2 * len(named)

    header = struct.pack(
        "<IIHHIIIIIII",
        0,
        0x5F5E100,
        0,
        0,
        module_rva,
        ordinal_base,
        count,
        len(named),
        eat_rva,
        npt_rva,
        ot_rva,
    )
    data = header + bytes(body)
    return data, len(data)


# =============================================================================
# .NET single-file bundles
# =============================================================================


def encode_bundle_string(text: str) -> bytes:
    """7-bit length-prefixed UTF-8 string."""
    raw = text.encode("utf-8")
    length = len(raw)
    prefix = bytearray()
    while True:
        byte = length & 0x7F
        length >>= 7
        if length:
            prefix.append(byte | 0x80)
        else:
            prefix.append(byte)
            break
    return bytes(prefix) + raw


@dataclass
class BundledImage:
    """A synthetic apphost with an appended bundle."""

    data: bytes
    pointer_offset: int  # File offset of the i64 manifest pointer
    manifest_offset: int
    files: dict[str, bytes]  # Bundled file contents by path


def build_bundle_payload(
    base_offset: int,
    files: list[tuple[str, bytes]],
    major_version: int,
    bundle_id: str = "bundle-0001",
    deps_json: bytes | None = b'{"deps": {}}',
    runtime_config: bytes | None = b'{"runtimeOptions": {}}',
) -> tuple[bytes, int]:
    """Build bundled file data followed by the manifest.

    Args:
        base_offset: File offset where the payload will be placed
        files: (relative path, content) pairs
        major_version: Manifest major version (1, 2 or 6 are typical)
        bundle_id: Bundle identifier string
        deps_json: Content of the .deps.json file (v2+), None for absent
        runtime_config: Content of the .runtimeconfig.json file (v2+)

    Returns:
        (payload bytes, file offset of the manifest)
    """
    payload = bytearray()
    entries = []
    for path, content in files:
        entries.append((path, base_offset + len(payload), len(content)))
        payload += content

    def place(content: bytes | None) -> tuple[int, int]:
        if content is None:
            return 0, 0
        offset = base_offset + len(payload)
        payload.extend(content)
        return offset, len(content)

    deps = place(deps_json)
    config = place(runtime_config)

    manifest_offset = base_offset + len(payload)
    manifest = bytearray()
    manifest += struct.pack("<IIi", major_version, 0, len(files))
    manifest += encode_bundle_string(bundle_id)
    if major_version >= 2:
        manifest += struct.pack("<qqqqQ", deps[0], deps[1], config[0], config[1], 0)
    for path, offset, size in entries:
        manifest += struct.pack("<qq", offset, size)
        if major_version >= 6:
            manifest += struct.pack("<q", 0)
        manifest += struct.pack("<B", 1)
        manifest += encode_bundle_string(path)

    payload += manifest
    return bytes(payload), manifest_offset


def make_bundled_image(
    files: list[tuple[str, bytes]],
    major_version: int = 6,
    sections: list[SectionSpec] | None = None,
    data_directories: dict[int, tuple[int, int]] | None = None,
    **payload_kwargs,
) -> BundledImage:
    """Build an apphost-like image with a bundle appended as overlay data.

    The manifest pointer and bundle signature are placed in a trailing
    ".bundle" data section, as the apphost keeps them in its data.
    """
    sections = list(sections or [])
    marker = bytes(8) + BUNDLE_SIGNATURE
    sections.append(SectionSpec(".bundle", marker, DATA))

    image = bytearray(build_pe(sections, data_directories=data_directories))
    base_offset = len(image)
    payload, manifest_offset = build_bundle_payload(
        base_offset, files, major_version, **payload_kwargs
    )
    image += payload

    pointer_offset = bytes(image).find(BUNDLE_SIGNATURE) - 8
    struct.pack_into("<q", image, pointer_offset, manifest_offset)

    return BundledImage(
        data=bytes(image),
        pointer_offset=pointer_offset,
        manifest_offset=manifest_offset,
        files=dict(files),
    )


class _Reader:
    def __init__(self, data: bytes, position: int):
        self.data = data
        self.position = position

    def take(self, fmt: str) -> int:
        (value,) = struct.unpack_from(fmt, self.data, self.position)
        self.position += struct.calcsize(fmt)
        return value

    def string(self) -> str:
        length = 0
        shift = 0
        while True:
            byte = self.take("<B")
            length |= (byte & 0x7F) << shift
            shift += 7
            if not byte & 0x80:
                break
        raw = self.data[self.position : self.position + length]
        self.position += length
        return raw.decode("utf-8")


def read_bundle_manifest(data: bytes) -> dict:
    """Decode the bundle manifest of an image (independent of nvpatch).

    Returns:
        Dictionary with manifest_offset, version, bundle_id, deps,
        runtime_config ((offset, size) pairs) and files (path -> (offset, size))
    """
    pointer_offset = data.find(BUNDLE_SIGNATURE) - 8
    (manifest_offset,) = struct.unpack_from("<q", data, pointer_offset)
    reader = _Reader(data, manifest_offset)

    major = reader.take("<I")
    minor = reader.take("<I")
    count = reader.take("<i")
    bundle_id = reader.string()

    deps = runtime_config = None
    if major >= 2:
        deps = (reader.take("<q"), reader.take("<q"))
        runtime_config = (reader.take("<q"), reader.take("<q"))
        reader.take("<Q")

    files = {}
    for _ in range(count):
        offset = reader.take("<q")
        size = reader.take("<q")
        if major >= 6:
            reader.take("<q")
        reader.take("<B")
        files[reader.string()] = (offset, size)

    return {
        "manifest_offset": manifest_offset,
        "version": (major, minor),
        "bundle_id": bundle_id,
        "deps": deps,
        "runtime_config": runtime_config,
        "files": files,
    }
