"""
Staging buffer for a new PE section.

A SectionBuilder is handed out by PEImage.append_section() with its RVA and
file offset already fixed. Callers write the section's content sequentially
and can ask for the RVA of the current position at any point, which is how
tables that refer to each other (the export directory and its sub-tables)
record forward references while still being written in a single pass.
"""

import io
import struct

from .types import (
    SectionHeader,
    cstring_to_bytes,
    round_up_to_alignment,
    section_name_to_bytes,
)


class SectionBuilder:
    """Accumulates the bytes of one new section.

    Usage:
        builder = image.append_section(".nvpatch", characteristics)
        value_rva = builder.current_rva
        builder.write_u32(1)

        header_pos = builder.tell()
        builder.write(b"\\x00" * 40)  # reserve
        ...
        builder.seek(header_pos)
        builder.write(header_bytes)
        builder.seek_end()
    """

    def __init__(
        self,
        name: str,
        characteristics: int,
        rva: int,
        file_offset: int,
        file_alignment: int,
    ):
        # Validate the name up front so a bad name never reaches serialize()
        self._name_bytes = section_name_to_bytes(name)
        self.name = name
        self.characteristics = characteristics
        self.rva = rva
        self.file_offset = file_offset
        self._file_alignment = file_alignment
        self._stream: io.BytesIO | None = io.BytesIO()
        self._content: bytes | None = None

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return (
            f"SectionBuilder({self.name!r}, rva=0x{self.rva:x}, "
            f"file_offset=0x{self.file_offset:x}, size=0x{self.size:x}, {state})"
        )

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def closed(self) -> bool:
        return self._stream is None

    @property
    def current_rva(self) -> int:
        """RVA of the current write position."""
        return self.rva + self._open_stream().tell()

    @property
    def size(self) -> int:
        """Number of content bytes written so far (or in total once closed)."""
        if self._stream is not None:
            return len(self._stream.getbuffer())
        return len(self._content)

    @property
    def virtual_size(self) -> int:
        return self.size

    @property
    def size_on_disk(self) -> int:
        """Content size padded to the image's FileAlignment."""
        return round_up_to_alignment(self.size, self._file_alignment)

    @property
    def end_rva(self) -> int:
        return self.rva + self.virtual_size

    @property
    def end_file_offset(self) -> int:
        return self.file_offset + self.size_on_disk

    @property
    def content(self) -> bytes:
        """Final section bytes (without file alignment padding)."""
        if self._content is None:
            raise ValueError(f"Section {self.name} has not been closed")
        return self._content

    # =========================================================================
    # Writing
    # =========================================================================

    def _open_stream(self) -> io.BytesIO:
        if self._stream is None:
            raise ValueError(f"Section {self.name} is closed")
        return self._stream

    def write(self, data: bytes) -> int:
        """Write raw bytes at the current position.

        Returns:
            RVA at which the data was written
        """
        stream = self._open_stream()
        rva = self.rva + stream.tell()
        stream.write(data)
        return rva

    def write_u16(self, value: int) -> int:
        return self.write(struct.pack("<H", value))

    def write_u32(self, value: int) -> int:
        return self.write(struct.pack("<I", value))

    def write_cstring(self, text: str) -> int:
        """Write a NUL-terminated string, returning its RVA."""
        return self.write(cstring_to_bytes(text) + b"\x00")

    def tell(self) -> int:
        """Current write position, relative to the start of the section."""
        return self._open_stream().tell()

    def seek(self, position: int) -> None:
        """Move the write position to an already written offset."""
        stream = self._open_stream()
        if position < 0 or position > len(stream.getbuffer()):
            raise ValueError(
                f"Seek position 0x{position:x} outside section {self.name} "
                f"(size 0x{len(stream.getbuffer()):x})"
            )
        stream.seek(position)

    def seek_end(self) -> None:
        self._open_stream().seek(0, io.SEEK_END)

    def close(self) -> None:
        """Freeze the content. Further writes raise ValueError."""
        if self._stream is not None:
            self._content = self._stream.getvalue()
            self._stream = None

    # =========================================================================
    # Header
    # =========================================================================

    def to_section_header(self) -> SectionHeader:
        """Build the section table entry for this (closed) section."""
        if not self.closed:
            raise ValueError(f"Section {self.name} must be closed first")
        return SectionHeader(
            Name=self._name_bytes,
            VirtualSize=self.virtual_size,
            VirtualAddress=self.rva,
            SizeOfRawData=self.size_on_disk,
            PointerToRawData=self.file_offset,
            PointerToRelocations=0,
            PointerToLinenumbers=0,
            NumberOfRelocations=0,
            NumberOfLinenumbers=0,
            Characteristics=self.characteristics,
        )
