"""Command line entry point: obfuscate the import calls of a PE file in place."""

from __future__ import annotations

import sys
from pathlib import Path

from icopatch.patcher import patch_calls
from icopatch.pe import PEFormatError, PEImage
from icopatch.stubs import generate_import_stubs

PROG = "icopatch"
STUB_SECTION_NAME = ".istub"
STUB_SECTION_SIZE = 4096


def main(argv=None) -> int:
    """Run the patcher on the single file named in ``argv``; return the exit status."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 1:
        print(f"Usage: {PROG} <pe_file>")
        return 1
    path = Path(args[0])

    try:
        data = path.read_bytes()
    except OSError:
        print("Failed to initialize ICO context")
        return 1

    try:
        image = PEImage(data)
    except PEFormatError:
        print("Failed to parse PE file")
        return 1

    try:
        section = image.add_section(STUB_SECTION_NAME, STUB_SECTION_SIZE)
    except PEFormatError:
        print("Failed to add new section")
        return 1

    try:
        stubs = generate_import_stubs(image, section)
    except PEFormatError:
        print("Failed to generate import stubs")
        return 1

    try:
        patches = patch_calls(image, stubs)
    except PEFormatError:
        print("Failed to patch CALL instructions")
        return 1
    for patch in patches:
        print(f"[patched] {patch.describe()}")

    try:
        image.save(path)
    except OSError:
        print("Failed to apply changes")
        return 1

    print("Successfully obfuscated import calls")
    return 0


if __name__ == "__main__":
    sys.exit(main())