#!/usr/bin/env python3
"""Test-only helpers: a pure-Python encryptor and an in-memory archive builder.

The reader never encrypts; these helpers exist so the tests can produce
archives whose plaintext is known.
"""

import struct
from typing import List, Optional, Sequence, Tuple

from sprite_crypto import HEADER_SIZE, CipherParams, generate_key_table


FILE_COUNT_OFFSET = 0x3F0
TOC_SEED = 0x1234ABCD
CONST_SEED = 0x0BADF00D

SAMPLE_PARAMS = CipherParams(
    file_count_header_offset=FILE_COUNT_OFFSET,
    key_init_mul=0x0019660D,
    key_init_add=0x3C6EF35F,
    key_init_shift=7,
    key_round_add=0x6F4A2C1B,
    key_round_and=0x00FF7F3F,
    key_round_shift=3,
    decrypt_mod1=251,
    decrypt_add=0x5D,
    decrypt_mod2=97,
    decrypt_xor=0xA7,
)


def reference_decrypt(data: bytes, key_table: bytes, params: CipherParams, base_index: int = 0) -> bytes:
    out = bytearray(data)
    for i, value in enumerate(out):
        k = base_index + i
        value ^= key_table[k % params.decrypt_mod1]
        value = (value + params.decrypt_add) & 0xFF
        value = (value + key_table[k % params.decrypt_mod2]) & 0xFF
        value ^= params.decrypt_xor
        out[i] = value
    return bytes(out)


def encrypt(data: bytes, seed: int, params: CipherParams, base_index: int = 0) -> bytes:
    key_table = generate_key_table(seed, params)
    out = bytearray(data)
    for i, value in enumerate(out):
        k = base_index + i
        value ^= params.decrypt_xor
        value = (value - key_table[k % params.decrypt_mod2]) & 0xFF
        value = (value - params.decrypt_add) & 0xFF
        value ^= key_table[k % params.decrypt_mod1]
        out[i] = value
    return bytes(out)


def build_archive(
    files: Sequence[Tuple[str, bytes]],
    params: CipherParams = SAMPLE_PARAMS,
    count_words: Optional[Sequence[int]] = None,
    raw_names: Optional[bytes] = None,
    name_offsets: Optional[Sequence[int]] = None,
) -> bytes:
    """Build an encrypted archive holding *files* (name, plaintext payload).

    *count_words* overrides the int32 words written at the file-count offset;
    by default the count is split over two words to exercise the summation.
    *raw_names* / *name_offsets* replace the generated name block.
    """
    header = bytearray(HEADER_SIZE)
    if count_words is None:
        count_words = [len(files) + 7, -7]
    for i, word in enumerate(count_words):
        struct.pack_into("<i", header, params.file_count_header_offset + 4 * i, word)
    struct.pack_into("<I", header, 0xD4, TOC_SEED)
    struct.pack_into("<I", header, 0x5C, CONST_SEED)

    if raw_names is None:
        names = bytearray()
        offsets: List[int] = []
        for name, _payload in files:
            offsets.append(len(names))
            names += name.encode("ascii") + b"\x00"
    else:
        names = bytearray(raw_names)
        offsets = list(name_offsets or [0] * len(files))

    data_begin = HEADER_SIZE + 16 * len(files) + len(names)
    toc = bytearray()
    payloads = bytearray()
    for index, (_name, payload) in enumerate(files):
        key = entry_key(index)
        toc += struct.pack("<IiII", len(payload), offsets[index], key, data_begin + len(payloads))
        payloads += encrypt(payload, key, params)

    return (
        bytes(header)
        + encrypt(bytes(toc), TOC_SEED, params)
        + encrypt(bytes(names), CONST_SEED, params)
        + bytes(payloads)
    )


def entry_key(index: int) -> int:
    return 0x9E3779B9 * (index + 1) & 0xFFFFFFFF
