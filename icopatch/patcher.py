"""Redirecting import calls in code sections to generated stubs."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Iterable

from icopatch.pe import PEImage
from icopatch.stubs import ImportStub

_U32 = 0xFFFFFFFF
_CALL_INDIRECT = b"\xff\x15"
_CALL_REL32 = 0xE8
_NOP = 0x90

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Patch:
    """One rewritten call instruction."""

    rva: int
    offset: int
    original: bytes
    replacement: bytes
    stub: ImportStub

    @property
    def rel32(self) -> int:
        """The signed displacement written after the E8 opcode."""
        return struct.unpack_from("<i", self.replacement, 1)[0]

    @property
    def was_indirect(self) -> bool:
        """True when the patched instruction was an FF 15 indirect call."""
        return self.original.startswith(_CALL_INDIRECT)

    def describe(self) -> str:
        displacement = self.rel32 & _U32
        if self.was_indirect:
            return f"0x{self.rva:08X}: FF15 \u2192 E8 {displacement:08X} 90"
        return f"0x{self.rva:08X}: E8 \u2192 E8 {displacement:08X}"


def _to_signed(value: int) -> int:
    value &= _U32
    return value - (1 << 32) if value & 0x80000000 else value


def _displacement(image_base: int, call_rva: int, stub: ImportStub) -> int:
    stub_va = (image_base + stub.stub_rva) & _U32
    call_va = (image_base + call_rva) & _U32
    return _to_signed(stub_va - (call_va + 5))


def patch_calls(image: PEImage, stubs: Iterable[ImportStub]) -> list[Patch]:
    """Rewrite calls through the import table so they go to matching stubs.

    Every code section is scanned byte by byte. ``FF 15 [iat]`` calls whose
    IAT slot has a stub become ``E8 rel32 90``; ``E8 rel32`` calls that land
    inside the import directory on a stub's original RVA are retargeted.
    """
    by_iat: dict[int, ImportStub] = {}
    by_original: dict[int, ImportStub] = {}
    for stub in stubs:
        by_iat.setdefault(stub.iat_rva, stub)
        by_original.setdefault(stub.original_rva, stub)

    import_rva, import_size = image.import_directory()
    image_base = image.image_base
    data = image.data
    patches: list[Patch] = []

    for section in image.sections:
        if not section.contains_code:
            continue
        base = section.pointer_to_raw_data
        limit = min(section.virtual_size, len(data) - base)

        for off in range(max(limit - 5, 0)):
            pos = base + off
            rva = (section.virtual_address + off) & _U32

            if data[pos : pos + 2] == _CALL_INDIRECT:
                iat_rva = (image.read_u32(pos + 2) - image_base) & _U32
                log.debug("found FF15 at RVA 0x%08X, IAT RVA = 0x%08X", rva, iat_rva)
                stub = by_iat.get(iat_rva)
                if stub is not None:
                    original = bytes(data[pos : pos + 6])
                    rel32 = _displacement(image_base, rva, stub)
                    replacement = bytes([_CALL_REL32]) + struct.pack("<i", rel32) + bytes([_NOP])
                    data[pos : pos + 6] = replacement
                    patches.append(Patch(rva, pos, original, replacement, stub))
                    continue

            if data[pos] == _CALL_REL32:
                rel = struct.unpack_from("<i", data, pos + 1)[0]
                target = (rva + 5 + rel) & _U32
                if import_rva <= target < import_rva + import_size:
                    stub = by_original.get(target)
                    if stub is not None:
                        original = bytes(data[pos : pos + 5])
                        rel32 = _displacement(image_base, rva, stub)
                        data[pos + 1 : pos + 5] = struct.pack("<i", rel32)
                        patches.append(
                            Patch(rva, pos, original, bytes(data[pos : pos + 5]), stub)
                        )
    return patches


__all__ = ["Patch", "patch_calls"]