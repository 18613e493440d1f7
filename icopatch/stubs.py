"""Generation of the small trampolines that stand in for imported functions."""

from __future__ import annotations

import random
import struct
from dataclasses import dataclass, replace

from icopatch.pe import OPTIONAL_HDR64_MAGIC, PEFormatError, PEImage, Section

XOR_KEY = 0x42
_U32 = 0xFFFFFFFF
_DESCRIPTOR_SIZE = 20

_X86_TEMPLATE = bytes(
    (
        0x60,
        0xB8, 0x00, 0x00, 0x00, 0x00,
        0x34, XOR_KEY,
        0x89, 0x44, 0x24, 0x20,
        0x61,
        0xFF, 0x25, 0x00, 0x00, 0x00, 0x00,
    )
)

_X64_TEMPLATE = bytes(
    (
        0x50,
        0x48, 0xB8, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00,
        0x48, 0x34, XOR_KEY,
        0x48, 0x89, 0x44, 0x24, 0x08,
        0x58,
        0xFF, 0x25, 0x00, 0x00, 0x00, 0x00,
    )
)

_default_rng = random.Random()


@dataclass(frozen=True)
class ImportStub:
    """A generated stub and where it belongs."""

    original_rva: int
    iat_rva: int
    code: bytes
    stub_rva: int = 0

    @property
    def size(self) -> int:
        return len(self.code)


def build_stub(original_rva, iat_rva, is_x64, rng=None) -> ImportStub:
    """Fill a stub template and append one random padding byte."""
    if rng is None:
        rng = _default_rng
    template = _X64_TEMPLATE if is_x64 else _X86_TEMPLATE
    code = bytearray(template)
    encrypted = (original_rva ^ XOR_KEY) & _U32
    if is_x64:
        struct.pack_into("<Q", code, 3, encrypted)
    else:
        struct.pack_into("<I", code, 1, encrypted)
    struct.pack_into("<I", code, len(template) - 4, iat_rva & _U32)
    code.append(rng.randrange(256))
    return ImportStub(original_rva=original_rva, iat_rva=iat_rva, code=bytes(code))


def _read_cstring(image: PEImage, offset: int) -> str:
    if not 0 <= offset < len(image.data):
        raise PEFormatError(f"string offset 0x{offset:X} outside image")
    end = image.data.find(b"\0", offset)
    if end < 0:
        raise PEFormatError(f"unterminated string at 0x{offset:X}")
    return image.data[offset:end].decode("latin-1")


def _read_thunk(image: PEImage, offset: int, width: int) -> int:
    value = image.read_u32(offset)
    if width == 8:
        value |= image.read_u32(offset + 4) << 32
    return value


def iter_imports(image):
    """Yield (dll_name, function_rva, iat_rva) for every imported function.

    For imports by ordinal the function value is the ordinal; for imports by
    name it is the RVA of the name string.
    """
    import_rva, import_size = image.import_directory()
    if import_rva == 0 or import_size == 0:
        raise PEFormatError("image has no import table")

    width = 8 if image.magic == OPTIONAL_HDR64_MAGIC else 4
    ordinal_flag = 1 << (width * 8 - 1)
    descriptor = image.rva_to_offset(import_rva)

    while True:
        original_first_thunk = image.read_u32(descriptor)
        name_rva = image.read_u32(descriptor + 12)
        first_thunk = image.read_u32(descriptor + 16)
        if name_rva == 0:
            return
        dll_name = _read_cstring(image, image.rva_to_offset(name_rva))

        thunk = image.rva_to_offset(original_first_thunk)
        index = 0
        while (value := _read_thunk(image, thunk, width)) != 0:
            if value & ordinal_flag:
                function_rva = value & 0xFFFF
            else:
                function_rva = ((value & _U32) + 2) & _U32
            yield dll_name, function_rva, (first_thunk + index * width) & _U32
            thunk += width
            index += 1
        descriptor += _DESCRIPTOR_SIZE


def generate_import_stubs(image, section, rng=None) -> list[ImportStub]:
    """Write one stub per import into ``section`` and return them in order."""
    imports = list(iter_imports(image))
    built = [build_stub(func_rva, iat_rva, image.is_x64, rng) for _, func_rva, iat_rva in imports]

    total = sum(stub.size for stub in built)
    end = section.pointer_to_raw_data + total
    if total > section.size_of_raw_data or end > len(image.data):
        raise PEFormatError(
            f"stub section holds {section.size_of_raw_data} bytes, {total} needed"
        )

    stubs = []
    current = section.virtual_address
    for stub in built:
        position = section.pointer_to_raw_data + (current - section.virtual_address)
        image.data[position : position + stub.size] = stub.code
        stubs.append(replace(stub, stub_rva=current))
        current += stub.size
    return stubs


__all__ = [
    "ImportStub",
    "Section",
    "XOR_KEY",
    "build_stub",
    "generate_import_stubs",
    "iter_imports",
]