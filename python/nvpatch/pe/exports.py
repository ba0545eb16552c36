"""
PE export directory decoding and encoding.

An export directory is a 40-byte header followed by three tables:
- the export address table, one RVA per ordinal from OrdinalBase upwards
- the name pointer table, RVAs of NUL-terminated names sorted by name
- the ordinal table, parallel to the name pointers, holding
  ordinal - OrdinalBase as 16-bit values

ExportTable decodes an image's existing directory into entries keyed by
ordinal and by name, lets callers add entries, and re-encodes the whole
directory into a new section. Encoding writes everything sequentially and
back-patches only the header once every sub-table's RVA is known.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Iterator

from ..errors import ConflictingState, FormatError, InconsistentExportTable
from .image import PEImage
from .section import SectionBuilder
from .types import (
    DataDirectory,
    ExportDirectoryTable,
    EXPORT_TIMESTAMP_SENTINEL,
    IMAGE_DIRECTORY_ENTRY_EXPORT,
    cstring_to_bytes,
)

logger = logging.getLogger(__name__)

MAX_ORDINAL_SPAN = 0x10000  # Ordinal table entries are 16-bit


@dataclass
class ExportEntry:
    """A single exported symbol."""

    ordinal: int
    name: str | None
    rva: int  # RVA of the exported code or data
    forwarder: str | None = None  # "DLL.Symbol" for forwarded exports


class ExportTable:
    """Addressable view of a module's export directory.

    Usage:
        exports = ExportTable.from_image(image)
        entry = exports.find("NvOptimusEnablement")

        exports.add(ExportEntry(exports.next_ordinal(), "Foo", rva))
        directory = exports.encode(builder)
        image.set_data_directory(IMAGE_DIRECTORY_ENTRY_EXPORT, directory)
    """

    def __init__(self, module_name: str = "", ordinal_base: int = 1):
        self.module_name = module_name
        self.ordinal_base = ordinal_base
        self._by_ordinal: dict[int, ExportEntry] = {}
        self._by_name: dict[str, ExportEntry] = {}

    def __repr__(self) -> str:
        return f"ExportTable({self.module_name!r}, {len(self)} entries)"

    # =========================================================================
    # Decoding
    # =========================================================================

    @classmethod
    def from_image(cls, image: PEImage) -> "ExportTable":
        """Decode the export directory of an image.

        Returns an empty table when the image has no export directory.

        Raises:
            InconsistentExportTable: If a name refers to an ordinal the
                address table does not define, or a sub-table is unreadable
        """
        directory = image.get_data_directory(IMAGE_DIRECTORY_ENTRY_EXPORT)
        if directory is None or not directory.is_present:
            return cls()

        header_offset = image.rva_to_file_offset(directory.VirtualAddress)
        if header_offset is None:
            logger.debug(
                "Export directory RVA 0x%x not in any section, treating as absent",
                directory.VirtualAddress,
            )
            return cls()

        try:
            raw = image.read_bytes_at_rva(
                directory.VirtualAddress, ExportDirectoryTable.SIZE
            )
            header = ExportDirectoryTable.from_bytes(raw)
            return cls._decode(image, directory, header)
        except FormatError as e:
            raise InconsistentExportTable(f"Unreadable export directory: {e}") from e

    @classmethod
    def _decode(
        cls,
        image: PEImage,
        directory: DataDirectory,
        header: ExportDirectoryTable,
    ) -> "ExportTable":
        module_name = ""
        if header.NameRVA:
            module_name = image.read_cstring(header.NameRVA)

        table = cls(module_name=module_name, ordinal_base=header.OrdinalBase)
        dir_start = directory.VirtualAddress
        dir_end = dir_start + directory.Size

        # Export address table; zero slots are unused ordinals
        count = header.AddressTableEntries
        if count:
            raw = image.read_bytes_at_rva(header.ExportAddressTableRVA, count * 4)
            for i, rva in enumerate(struct.unpack(f"<{count}I", raw)):
                if rva == 0:
                    continue
                entry = ExportEntry(
                    ordinal=header.OrdinalBase + i, name=None, rva=rva
                )
                if dir_start <= rva < dir_end:
                    entry.forwarder = image.read_cstring(rva)
                table._by_ordinal[entry.ordinal] = entry

        # Name pointer table and its parallel ordinal table
        names = header.NumberOfNamePointers
        if names:
            name_rvas = struct.unpack(
                f"<{names}I", image.read_bytes_at_rva(header.NamePointerRVA, names * 4)
            )
            ordinal_offsets = struct.unpack(
                f"<{names}H", image.read_bytes_at_rva(header.OrdinalTableRVA, names * 2)
            )
            for name_rva, ordinal_offset in zip(name_rvas, ordinal_offsets):
                ordinal = ordinal_offset + header.OrdinalBase
                name = image.read_cstring(name_rva)
                entry = table._by_ordinal.get(ordinal)
                if entry is None:
                    raise InconsistentExportTable(
                        f"Export name '{name}' refers to ordinal {ordinal}, "
                        "which has no address table entry"
                    )
                if name in table._by_name:
                    raise InconsistentExportTable(f"Duplicate export name '{name}'")
                entry.name = name
                table._by_name[name] = entry

        logger.debug(
            "Decoded export table %r: %d entries, %d named, ordinal base %d",
            module_name,
            len(table._by_ordinal),
            len(table._by_name),
            header.OrdinalBase,
        )
        return table

    # =========================================================================
    # Lookup
    # =========================================================================

    def find(self, name: str) -> ExportEntry | None:
        """Find an export by name."""
        return self._by_name.get(name)

    def find_ordinal(self, ordinal: int) -> ExportEntry | None:
        """Find an export by ordinal."""
        return self._by_ordinal.get(ordinal)

    @property
    def entries(self) -> list[ExportEntry]:
        """All entries in ordinal order."""
        return [self._by_ordinal[o] for o in sorted(self._by_ordinal)]

    def __len__(self) -> int:
        return len(self._by_ordinal)

    def __iter__(self) -> Iterator[ExportEntry]:
        return iter(self.entries)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def next_ordinal(self) -> int:
        """Next unused ordinal: max existing + 1, or 1 for an empty table."""
        if not self._by_ordinal:
            return 1
        return max(self._by_ordinal) + 1

    def add(self, entry: ExportEntry) -> None:
        """Add a new entry.

        Raises:
            ConflictingState: If the ordinal or (non-None) name is taken.
                The table is left unchanged.
        """
        if entry.ordinal in self._by_ordinal:
            raise ConflictingState(f"Export ordinal {entry.ordinal} already exists")
        if entry.name is not None and entry.name in self._by_name:
            raise ConflictingState(f"Export name '{entry.name}' already exists")

        self._by_ordinal[entry.ordinal] = entry
        if entry.name is not None:
            self._by_name[entry.name] = entry

    # =========================================================================
    # Encoding
    # =========================================================================

    def encode(self, builder: SectionBuilder) -> DataDirectory:
        """Write a complete export directory into a section.

        Layout, in write order: directory header (reserved, then rewritten),
        address table, entry names, forwarder strings, module name, name
        pointer table, ordinal table.

        Args:
            builder: Open section to write into, at its current position

        Returns:
            DataDirectory covering everything written. The table itself is
            left unchanged.
        """
        entries = self.entries
        if entries:
            ordinal_base = entries[0].ordinal
            address_count = entries[-1].ordinal - ordinal_base + 1
        else:
            ordinal_base = self.ordinal_base
            address_count = 0
        if address_count > MAX_ORDINAL_SPAN:
            raise ValueError(
                f"Ordinal range {ordinal_base}..{entries[-1].ordinal} is too wide "
                f"for a 16-bit ordinal table"
            )

        header = ExportDirectoryTable(
            Flags=0,
            TimeDateStamp=EXPORT_TIMESTAMP_SENTINEL,
            MajorVersion=0,
            MinorVersion=0,
            NameRVA=0,
            OrdinalBase=ordinal_base,
            AddressTableEntries=address_count,
            NumberOfNamePointers=0,
            ExportAddressTableRVA=0,
            NamePointerRVA=0,
            OrdinalTableRVA=0,
        )

        # 1. Reserve room for the header, rewritten once sub-tables are placed
        header_pos = builder.tell()
        header_rva = builder.write(bytes(ExportDirectoryTable.SIZE))

        # 2. Export address table, gaps zero-filled
        header.ExportAddressTableRVA = builder.current_rva
        address_table_pos = builder.tell()
        for ordinal in range(ordinal_base, ordinal_base + address_count):
            entry = self._by_ordinal.get(ordinal)
            builder.write_u32(entry.rva if entry is not None else 0)

        # 3. Names, in ordinal order
        name_rvas: dict[str, int] = {}
        for entry in entries:
            if entry.name is not None:
                name_rvas[entry.name] = builder.write_cstring(entry.name)

        # 4. Forwarder strings must live inside the directory range
        for entry in entries:
            if entry.forwarder is not None:
                forwarder_rva = builder.write_cstring(entry.forwarder)
                end = builder.tell()
                builder.seek(address_table_pos + (entry.ordinal - ordinal_base) * 4)
                builder.write_u32(forwarder_rva)
                builder.seek(end)

        # 5. Module name
        header.NameRVA = builder.write_cstring(self.module_name)

        # 6. Name pointer table, sorted the way the loader binary-searches it
        named = sorted(
            (e for e in entries if e.name is not None),
            key=lambda e: cstring_to_bytes(e.name),
        )
        header.NamePointerRVA = builder.current_rva
        for entry in named:
            builder.write_u32(name_rvas[entry.name])
        header.NumberOfNamePointers = len(named)

        # 7. Ordinal table, parallel to the name pointers
        header.OrdinalTableRVA = builder.current_rva
        for entry in named:
            builder.write_u16(entry.ordinal - ordinal_base)

        # 8. Back-patch the header
        end_pos = builder.tell()
        builder.seek(header_pos)
        builder.write(header.to_bytes())
        builder.seek_end()

        size = end_pos - header_pos
        logger.debug(
            "Encoded export directory at RVA 0x%x (0x%x bytes, %d entries, %d named)",
            header_rva,
            size,
            len(entries),
            len(named),
        )
        return DataDirectory(VirtualAddress=header_rva, Size=size)
