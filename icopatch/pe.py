"""Reading and extending PE32 and PE32+ images held in memory."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path

DOS_SIGNATURE = 0x5A4D
NT_SIGNATURE = 0x00004550
OPTIONAL_HDR32_MAGIC = 0x10B
OPTIONAL_HDR64_MAGIC = 0x20B
MACHINE_I386 = 0x014C
MACHINE_AMD64 = 0x8664

SCN_CNT_CODE = 0x00000020
SCN_MEM_EXECUTE = 0x20000000
SCN_MEM_READ = 0x40000000

DIRECTORY_ENTRY_IMPORT = 1
SECTION_HEADER_SIZE = 40
SHORT_NAME_SIZE = 8

_U32 = 0xFFFFFFFF
_SECTION_HEADER = struct.Struct("<8sIIIIIIHHI")


class PEFormatError(ValueError):
    """Raised when data is not a PE image this package can handle."""


@dataclass(frozen=True)
class Section:
    """One entry of the section table."""

    name: str
    virtual_size: int
    virtual_address: int
    size_of_raw_data: int
    pointer_to_raw_data: int
    characteristics: int

    @property
    def contains_code(self) -> bool:
        return bool(self.characteristics & SCN_CNT_CODE)

    def contains_rva(self, rva: int) -> bool:
        return self.virtual_address <= rva < self.virtual_address + self.virtual_size


def _align_up(value: int, alignment: int) -> int:
    mask = (alignment - 1) & _U32
    return (value + mask) & ~mask & _U32


class PEImage:
    """A PE file loaded into a mutable byte buffer."""

    def __init__(self, data):
        self.data = bytearray(data)
        if self._read("<H", 0) != DOS_SIGNATURE:
            raise PEFormatError("missing DOS signature")
        self.nt_offset = self.read_u32(0x3C)
        if self.read_u32(self.nt_offset) != NT_SIGNATURE:
            raise PEFormatError("missing NT signature")

        magic = self.magic
        if magic == OPTIONAL_HDR32_MAGIC:
            self.image_base = self.read_u32(self._optional_offset + 28)
        elif magic == OPTIONAL_HDR64_MAGIC:
            self.image_base = self._read("<Q", self._optional_offset + 24) & _U32
        else:
            raise PEFormatError(f"unknown optional header magic: 0x{magic:04X}")

        if self.machine not in (MACHINE_I386, MACHINE_AMD64):
            raise PEFormatError(f"unsupported machine: 0x{self.machine:04X}")

    @classmethod
    def load(cls, path):
        """Read and parse the PE file at ``path``."""
        return cls(Path(path).read_bytes())

    def save(self, path) -> None:
        """Write the current image bytes to ``path``."""
        Path(path).write_bytes(bytes(self.data))

    # -- low-level access -------------------------------------------------

    def _read(self, fmt: str, offset: int) -> int:
        if offset < 0:
            raise PEFormatError(f"negative offset {offset}")
        try:
            return struct.unpack_from(fmt, self.data, offset)[0]
        except struct.error as exc:
            raise PEFormatError(f"read past end of image at 0x{offset:X}") from exc

    def _write(self, fmt: str, offset: int, value: int) -> None:
        if offset < 0 or offset + struct.calcsize(fmt) > len(self.data):
            raise PEFormatError(f"write outside image at 0x{offset:X}")
        struct.pack_into(fmt, self.data, offset, value)

    def read_u32(self, offset: int) -> int:
        """Read a little-endian 32-bit value at a file offset."""
        return self._read("<I", offset)

    def write_u32(self, offset: int, value: int) -> None:
        """Write a little-endian 32-bit value at a file offset."""
        self._write("<I", offset, value & _U32)

    # -- header fields ----------------------------------------------------

    @property
    def _file_header_offset(self) -> int:
        return self.nt_offset + 4

    @property
    def _optional_offset(self) -> int:
        return self.nt_offset + 24

    @property
    def _section_table_offset(self) -> int:
        return self._optional_offset + self.size_of_optional_header

    @property
    def machine(self) -> int:
        return self._read("<H", self._file_header_offset)

    @property
    def number_of_sections(self) -> int:
        return self._read("<H", self._file_header_offset + 2)

    @property
    def size_of_optional_header(self) -> int:
        return self._read("<H", self._file_header_offset + 16)

    @property
    def magic(self) -> int:
        return self._read("<H", self._optional_offset)

    @property
    def is_pe32_plus(self) -> bool:
        return self.magic == OPTIONAL_HDR64_MAGIC

    @property
    def is_x64(self) -> bool:
        return self.machine == MACHINE_AMD64

    @property
    def section_alignment(self) -> int:
        return self.read_u32(self._optional_offset + 32)

    @property
    def file_alignment(self) -> int:
        return self.read_u32(self._optional_offset + 36)

    @property
    def size_of_image(self) -> int:
        return self.read_u32(self._optional_offset + 56)

    @property
    def sections(self) -> list[Section]:
        table = self._section_table_offset
        result = []
        for index in range(self.number_of_sections):
            offset = table + index * SECTION_HEADER_SIZE
            if offset + SECTION_HEADER_SIZE > len(self.data):
                raise PEFormatError("section table runs past end of image")
            raw_name, vsize, va, raw_size, raw_ptr, *_, chars = _SECTION_HEADER.unpack_from(
                self.data, offset
            )
            result.append(
                Section(
                    name=raw_name.split(b"\0", 1)[0].decode("latin-1"),
                    virtual_size=vsize,
                    virtual_address=va,
                    size_of_raw_data=raw_size,
                    pointer_to_raw_data=raw_ptr,
                    characteristics=chars,
                )
            )
        return result

    def import_directory(self) -> tuple[int, int]:
        """Return the (rva, size) of the import data directory."""
        directory = self._optional_offset + (112 if self.is_pe32_plus else 96)
        entry = directory + 8 * DIRECTORY_ENTRY_IMPORT
        return self.read_u32(entry), self.read_u32(entry + 4)

    def rva_to_offset(self, rva: int) -> int:
        """Map an RVA to a file offset; RVAs outside every section map to themselves."""
        for section in self.sections:
            if section.contains_rva(rva):
                return section.pointer_to_raw_data + (rva - section.virtual_address)
        return rva

    # -- modification -----------------------------------------------------

    def add_section(self, name: str, size: int) -> Section:
        """Append an executable code section of ``size`` bytes and resize the file to fit."""
        count = self.number_of_sections
        if count == 0:
            raise PEFormatError("image has no sections to place a new one after")
        header = self._section_table_offset + count * SECTION_HEADER_SIZE
        if header + SECTION_HEADER_SIZE > len(self.data):
            raise PEFormatError("no room for another section header")

        last = self.sections[-1]
        section_alignment = self.section_alignment
        file_alignment = self.file_alignment
        raw_name = name.encode("utf-8")[: SHORT_NAME_SIZE - 1]

        section = Section(
            name=raw_name.decode("latin-1"),
            virtual_size=_align_up(size, section_alignment),
            virtual_address=_align_up(last.virtual_address + last.virtual_size, section_alignment),
            size_of_raw_data=_align_up(size, file_alignment),
            pointer_to_raw_data=_align_up(
                last.pointer_to_raw_data + last.size_of_raw_data, file_alignment
            ),
            characteristics=SCN_MEM_EXECUTE | SCN_MEM_READ | SCN_CNT_CODE,
        )
        _SECTION_HEADER.pack_into(
            self.data,
            header,
            raw_name.ljust(SHORT_NAME_SIZE, b"\0"),
            section.virtual_size,
            section.virtual_address,
            section.size_of_raw_data,
            section.pointer_to_raw_data,
            0,
            0,
            0,
            0,
            section.characteristics,
        )
        self._write("<H", self._file_header_offset + 2, count + 1)
        self.write_u32(
            self._optional_offset + 56, section.virtual_address + section.virtual_size
        )

        new_end = section.pointer_to_raw_data + section.size_of_raw_data
        if new_end < len(self.data):
            del self.data[new_end:]
        else:
            self.data.extend(bytes(new_end - len(self.data)))
        return section