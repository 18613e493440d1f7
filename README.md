# icopatch

`icopatch` rewrites the import calls in a 32-bit or 64-bit PE image (`.exe` or `.dll`).
It gives each imported function a small stub and puts the stubs in a new executable
section named `.istub`. It then sends calls to imports through those stubs:

- An indirect `call [abs32]` (`FF 15 <abs32>`) whose address, minus the image base,
  is the IAT slot of a stub becomes a direct call to that stub followed by a `nop`
  (`E8 <rel32> 90`).
- A direct `call` (`E8 <rel32>`) whose target lies inside the import directory and
  equals a stub's original value is retargeted to that stub.

A stub holds three things: the import's lookup value XOR-ed with `0x42`, a
`jmp [iat_slot]` through the original IAT entry, and one random trailing byte. The
lookup value is the ordinal for imports by ordinal. For imports by name it is the
RVA of the name string, past the two-byte hint. x86 and x64 stubs use different
templates, and the image's machine type decides which one is used.

## Installation

```
pip install .
```

The package needs Python 3.10 or later and nothing outside the standard library.
To run the tests:

```
pip install .[test]
pytest
```

## Command line

```
icopatch path/to/program.exe
```

The file is **rewritten in place**, so work on a copy. The command goes through
these steps:

1. It reads the file and parses the DOS and NT headers. The optional header must be
   PE32 or PE32+, and the machine must be i386 or AMD64.
2. It appends a 4096-byte `.istub` section and resizes the file to end where the
   new section ends.
3. It writes one stub per imported function into that section.
4. It patches the matching call sites in every code section and prints one
   `[patched] ...` line for each.
5. It writes the image back to the same path.

If every step succeeds, it prints `Successfully obfuscated import calls` and exits
with status 0. If a step fails, it prints which step failed and exits with status 1.
Called without exactly one argument, it prints a usage line and exits with status 1.

## Library use

```python
import random

from icopatch.pe import PEImage, PEFormatError
from icopatch.stubs import generate_import_stubs
from icopatch.patcher import patch_calls

try:
    image = PEImage.load("program.exe")
except PEFormatError as exc:
    raise SystemExit(f"not a usable PE file: {exc}")

section = image.add_section(".istub", 4096)
stubs = generate_import_stubs(image, section, random.Random(1234))
for patch in patch_calls(image, stubs):
    print(patch.describe())

image.save("program.exe")
```

### `icopatch.pe`

- `PEImage(data)` copies the bytes into a mutable `bytearray`, which is available
  as `image.data`, and checks the headers. It raises `PEFormatError` (a
  `ValueError`) when the data is not an image it can handle. `PEImage.load(path)`
  and `image.save(path)` read and write files.
- The header fields are read-only properties: `image_base`, `machine`,
  `magic`, `is_x64`, `is_pe32_plus`, `number_of_sections`, `section_alignment`,
  `file_alignment`, `size_of_image` and `sections`. For PE32+ images,
  `image_base` keeps only its low 32 bits.
- `sections` is a list of frozen `Section` records. Each record has `name`,
  `virtual_size`, `virtual_address`, `size_of_raw_data`, `pointer_to_raw_data`,
  `characteristics`, `contains_code` and `contains_rva(rva)`.
- `rva_to_offset(rva)` maps an RVA to a file offset. An RVA that falls in no
  section is returned unchanged.
- `import_directory()` returns the `(rva, size)` of the import table.
- `read_u32(offset)` and `write_u32(offset, value)` read and write little-endian
  32-bit values at file offsets.
- `add_section(name, size)` adds a read and execute code section after the last
  one, aligned to the section and file alignments. It cuts the name to 7 bytes,
  updates the section count and `SizeOfImage`, resizes the data to the new raw end,
  and returns the new `Section`.

### `icopatch.stubs`

- `iter_imports(image)` yields `(dll_name, function_value, iat_rva)` for every
  import. It raises `PEFormatError` if the image has no import table.
- `build_stub(original_rva, iat_rva, is_x64, rng=None)` builds a single
  `ImportStub` with `original_rva`, `iat_rva`, `code`, `stub_rva` and `size`.
- `generate_import_stubs(image, section, rng=None)` writes the stubs one after
  another at the start of `section` and returns them with `stub_rva` filled in.
  It raises `PEFormatError` if they do not fit in the section.

Pass your own `random.Random` as `rng` to make the padding bytes reproducible.

### `icopatch.patcher`

`patch_calls(image, stubs)` changes `image.data` and returns a list of `Patch`
records. Each record has `rva`, `offset`, `original`, `replacement`, `stub`,
`rel32`, `was_indirect` and `describe()`. It logs each `FF 15` it finds at
debug level through the `icopatch.patcher` logger.

## What it does not do

- It scans code sections byte by byte and does not disassemble them. A byte
  pattern that looks like a call inside some other instruction is patched too.
- It does not update the header checksum, relocations or any data directory
  other than what is described above.
- It does not check that there is padding room for the new section header before
  the first section's data. It only checks that the header fits inside the file.