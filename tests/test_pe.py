import struct

import pytest

from icopatch.pe import PEFormatError, PEImage

TEXT_RVA = 0x1000
TEXT_RAW = 0x200
IDATA_RVA = 0x2000
IDATA_RAW = 0x400
IMPORT_SIZE = 40
SECTION_ALIGNMENT = 0x1000
FILE_ALIGNMENT = 0x200


def build_pe(x64=False, machine=None, image_base=0x400000, magic=None):
    data = bytearray(0x600)
    struct.pack_into("<H", data, 0, 0x5A4D)
    struct.pack_into("<I", data, 0x3C, 0x40)
    data[0x40:0x44] = b"PE\0\0"
    if machine is None:
        machine = 0x8664 if x64 else 0x014C
    opt_size = 0xF0 if x64 else 0xE0
    struct.pack_into("<HHIIIHH", data, 0x44, machine, 2, 0, 0, 0, opt_size, 0x0102)
    opt = 0x58
    if magic is None:
        magic = 0x20B if x64 else 0x10B
    struct.pack_into("<H", data, opt, magic)
    if x64:
        struct.pack_into("<Q", data, opt + 24, image_base)
        directory = opt + 112
        struct.pack_into("<I", data, opt + 108, 16)
    else:
        struct.pack_into("<I", data, opt + 28, image_base)
        directory = opt + 96
        struct.pack_into("<I", data, opt + 92, 16)
    struct.pack_into("<II", data, opt + 32, SECTION_ALIGNMENT, FILE_ALIGNMENT)
    struct.pack_into("<II", data, opt + 56, 0x3000, 0x200)
    struct.pack_into("<II", data, directory + 8, IDATA_RVA, IMPORT_SIZE)
    table = opt + opt_size
    struct.pack_into(
        "<8sIIIIIIHHI", data, table, b".text", 0x100, TEXT_RVA, 0x200, TEXT_RAW, 0, 0, 0, 0, 0x60000020
    )
    struct.pack_into(
        "<8sIIIIIIHHI", data, table + 40, b".idata", 0x200, IDATA_RVA, 0x200, IDATA_RAW, 0, 0, 0, 0, 0x40000040
    )
    return data


def test_parses_pe32_header():
    image = PEImage(build_pe())
    assert image.image_base == 0x400000
    assert image.machine == 0x014C
    assert not image.is_x64
    assert [s.name for s in image.sections] == [".text", ".idata"]
    assert image.sections[0].contains_code
    assert not image.sections[1].contains_code


def test_pe32_plus_image_base_is_truncated_to_32_bits():
    image = PEImage(build_pe(x64=True, image_base=0x140000000))
    assert image.image_base == 0x40000000
    assert image.is_x64


def test_rejects_missing_dos_signature():
    data = build_pe()
    data[0:2] = b"ZZ"
    with pytest.raises(PEFormatError):
        PEImage(data)


def test_rejects_missing_nt_signature():
    data = build_pe()
    data[0x40:0x44] = b"XX\0\0"
    with pytest.raises(PEFormatError):
        PEImage(data)


def test_rejects_unknown_optional_magic():
    with pytest.raises(PEFormatError, match="magic"):
        PEImage(build_pe(magic=0x107))


def test_rejects_unsupported_machine():
    with pytest.raises(PEFormatError, match="machine"):
        PEImage(build_pe(machine=0x01C0))


@pytest.mark.parametrize("data", [b"", b"MZ", b"MZ" + bytes(0x3A) + b"\xff\xff\x00\x00"])
def test_rejects_truncated_data(data):
    with pytest.raises(PEFormatError):
        PEImage(data)


def test_rva_to_offset_inside_section():
    image = PEImage(build_pe())
    assert image.rva_to_offset(IDATA_RVA + 0x60) == IDATA_RAW + 0x60
    assert image.rva_to_offset(TEXT_RVA) == TEXT_RAW


def test_rva_to_offset_outside_sections_is_identity():
    image = PEImage(build_pe())
    assert image.rva_to_offset(0x50) == 0x50


@pytest.mark.parametrize("x64", [False, True])
def test_import_directory(x64):
    image = PEImage(build_pe(x64=x64))
    assert image.import_directory() == (IDATA_RVA, IMPORT_SIZE)


def test_add_section_layout():
    image = PEImage(build_pe())
    last = image.sections[-1]
    section = image.add_section(".istub", 4096)

    assert section.name == ".istub"
    assert section.virtual_address % SECTION_ALIGNMENT == 0
    assert section.virtual_address >= last.virtual_address + last.virtual_size
    assert section.pointer_to_raw_data % FILE_ALIGNMENT == 0
    assert section.pointer_to_raw_data >= last.pointer_to_raw_data + last.size_of_raw_data
    assert section.virtual_size >= 4096
    assert section.size_of_raw_data >= 4096
    assert section.contains_code
    assert section.characteristics == 0x60000020
    assert image.number_of_sections == 3
    assert image.size_of_image == section.virtual_address + section.virtual_size
    assert len(image.data) == section.pointer_to_raw_data + section.size_of_raw_data


def test_add_section_is_visible_after_reparse():
    image = PEImage(build_pe())
    section = image.add_section(".istub", 100)
    reparsed = PEImage(bytes(image.data))
    assert reparsed.sections[-1] == section
    assert reparsed.sections[:2] == PEImage(build_pe()).sections


def test_add_section_truncates_long_names():
    image = PEImage(build_pe())
    section = image.add_section("longsectionname", 16)
    assert section.name == "longsec"
    assert image.sections[-1].name == "longsec"


def test_add_section_requires_existing_section():
    data = build_pe()
    struct.pack_into("<H", data, 0x46, 0)
    image = PEImage(data)
    with pytest.raises(PEFormatError):
        image.add_section(".istub", 16)


def test_read_write_u32_round_trip():
    image = PEImage(build_pe())
    image.write_u32(0x500, 0xDEADBEEF)
    assert image.read_u32(0x500) == 0xDEADBEEF
    image.write_u32(0x504, -1)
    assert image.read_u32(0x504) == 0xFFFFFFFF


def test_read_write_out_of_range():
    image = PEImage(build_pe())
    with pytest.raises(PEFormatError):
        image.read_u32(len(image.data) - 2)
    with pytest.raises(PEFormatError):
        image.write_u32(len(image.data), 1)
    with pytest.raises(PEFormatError):
        image.read_u32(-4)


def test_save_and_load_round_trip(tmp_path):
    image = PEImage(build_pe())
    image.add_section(".istub", 64)
    path = tmp_path / "sample.exe"
    image.save(path)
    loaded = PEImage.load(path)
    assert loaded.data == image.data
    assert loaded.sections == image.sections