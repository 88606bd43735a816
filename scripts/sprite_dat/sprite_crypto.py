#!/usr/bin/env python3
"""
sprite_crypto.py
================

Key-table generation and byte transform used by NekoNyan "Sprite" DAT
archives. The table of contents, the name block and every entry payload are
encrypted with the same position-dependent transform, each driven by its own
32-bit seed and the per-game parameter set in :class:`CipherParams`.
"""

from __future__ import annotations

from dataclasses import dataclass, fields as dataclass_fields
from typing import Dict, Union

import numpy as np


KEY_TABLE_SIZE = 256
HEADER_SIZE = 1024

_M32 = 0xFFFFFFFF

U32_FIELDS = (
    "key_init_mul",
    "key_init_add",
    "key_round_add",
    "key_round_and",
)
SHIFT_FIELDS = ("key_init_shift", "key_round_shift")
MODULUS_FIELDS = ("decrypt_mod1", "decrypt_mod2")
BYTE_FIELDS = ("decrypt_add", "decrypt_xor")

Buffer = Union[bytearray, memoryview]


class SpriteConfigError(ValueError):
    pass


class SpriteCryptoError(ValueError):
    pass


@dataclass(frozen=True)
class CipherParams:
    file_count_header_offset: int
    key_init_mul: int
    key_init_add: int
    key_init_shift: int
    key_round_add: int
    key_round_and: int
    key_round_shift: int
    decrypt_mod1: int
    decrypt_add: int
    decrypt_mod2: int
    decrypt_xor: int

    def __post_init__(self) -> None:
        for f in dataclass_fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise SpriteConfigError(f"{f.name} must be an integer (got {value!r})")

        if not 0 <= self.file_count_header_offset <= HEADER_SIZE - 4:
            raise SpriteConfigError(
                f"file_count_header_offset out of header range: {self.file_count_header_offset}"
            )
        for name in U32_FIELDS:
            if not 0 <= getattr(self, name) <= _M32:
                raise SpriteConfigError(f"{name} does not fit in 32 bits: {getattr(self, name)}")
        # Shifting a 32-bit word by 32 or more has no defined meaning here.
        for name in SHIFT_FIELDS:
            if not 0 <= getattr(self, name) < 32:
                raise SpriteConfigError(f"{name} must be in 0..31 (got {getattr(self, name)})")
        for name in MODULUS_FIELDS:
            if not 0 < getattr(self, name) <= KEY_TABLE_SIZE:
                raise SpriteConfigError(
                    f"{name} must be in 1..{KEY_TABLE_SIZE} (got {getattr(self, name)})"
                )
        for name in BYTE_FIELDS:
            if not 0 <= getattr(self, name) <= 0xFF:
                raise SpriteConfigError(f"{name} does not fit in a byte: {getattr(self, name)}")

    def to_dict(self) -> Dict[str, int]:
        return {f.name: getattr(self, f.name) for f in dataclass_fields(self)}


def generate_key_table(seed: int, params: CipherParams) -> bytes:
    """Derive the 256-byte key table for *seed*. Pure function of its inputs."""
    seed &= _M32
    table = bytearray(KEY_TABLE_SIZE)

    state1 = (seed * params.key_init_mul + params.key_init_add) & _M32
    state2 = ((state1 << params.key_init_shift) & _M32) ^ state1
    for i in range(KEY_TABLE_SIZE):
        state1 = (state1 - seed + state2) & _M32
        state2 = (state1 + params.key_round_add) & _M32
        state1 = (state1 * (state2 & params.key_round_and)) & _M32
        table[i] = state1 & 0xFF
        state1 >>= params.key_round_shift

    return bytes(table)


def decrypt_span(
    data: Buffer,
    key_table: bytes,
    params: CipherParams,
    base_index: int = 0,
) -> None:
    """Decrypt *data* in place.

    *base_index* is the absolute keystream position of ``data[0]``, so any
    slice of a stream can be decrypted on its own as long as its real offset
    is passed in.
    """
    if len(key_table) != KEY_TABLE_SIZE:
        raise SpriteCryptoError(
            f"Key table must be exactly {KEY_TABLE_SIZE} bytes long (got {len(key_table)})."
        )
    if base_index < 0:
        raise SpriteCryptoError(f"Negative keystream position: {base_index}")

    if len(data) == 0:
        return
    buf = np.frombuffer(data, dtype=np.uint8)
    if not buf.flags.writeable:
        raise TypeError("decrypt_span needs a writable buffer (bytearray or memoryview)")

    table = np.frombuffer(key_table, dtype=np.uint8)

    buf ^= _key_stream(table, params.decrypt_mod1, base_index, buf.size)
    buf += np.uint8(params.decrypt_add)
    buf += _key_stream(table, params.decrypt_mod2, base_index, buf.size)
    buf ^= np.uint8(params.decrypt_xor)


def _key_stream(table: np.ndarray, modulus: int, start: int, count: int) -> np.ndarray:
    """table[(start + i) % modulus] for i in range(count), one byte per position."""
    period = np.roll(table[:modulus], -(start % modulus))
    return np.resize(period, count)


def decrypt_with_seed(
    data: Buffer,
    seed: int,
    params: CipherParams,
    base_index: int = 0,
) -> None:
    decrypt_span(data, generate_key_table(seed, params), params, base_index)
