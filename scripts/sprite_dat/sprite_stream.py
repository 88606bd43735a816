#!/usr/bin/env python3
"""
sprite_stream.py
================

Read-only streams over Sprite DAT entries.

``ArchiveSliceStream`` exposes a byte range of the archive view as a seekable
raw stream. ``SpriteDecryptionStream`` sits on top of it and decrypts each
chunk as it is read, using the position reported by the wrapped stream
*before* the read as the keystream offset. Decryption happens in the raw
layer, so an ``io.BufferedReader`` on top never desynchronises the cipher.
"""

from __future__ import annotations

import io
from typing import Union

from sprite_crypto import CipherParams, decrypt_span, generate_key_table


class ArchiveSliceStream(io.RawIOBase):
    """Seekable view of ``view[offset:offset + size]``, clamped to the view."""

    def __init__(self, view, offset: int, size: int) -> None:
        super().__init__()
        view_len = len(view)
        start = min(max(0, offset), view_len)
        end = min(start + max(0, size), view_len)
        self._view = view
        self._start = start
        self._size = end - start
        self._pos = 0

    @property
    def size(self) -> int:
        return self._size

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        self._check_open()
        return self._pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        self._check_open()
        if whence == io.SEEK_SET:
            target = offset
        elif whence == io.SEEK_CUR:
            target = self._pos + offset
        elif whence == io.SEEK_END:
            target = self._size + offset
        else:
            raise ValueError(f"invalid whence ({whence})")
        if target < 0:
            raise ValueError(f"negative seek position {target}")
        self._pos = target
        return self._pos

    def readinto(self, b: Union[bytearray, memoryview]) -> int:
        self._check_open()
        out = memoryview(b).cast("B")
        count = min(len(out), self._size - self._pos)
        if count <= 0:
            return 0
        begin = self._start + self._pos
        out[:count] = self._view[begin:begin + count]
        self._pos += count
        return count

    def _check_open(self) -> None:
        if self.closed:
            raise ValueError("I/O operation on closed stream.")


class SpriteDecryptionStream(io.RawIOBase):
    def __init__(self, encrypted_source: io.RawIOBase, key: int, params: CipherParams) -> None:
        super().__init__()
        self._base = encrypted_source
        self._params = params
        self._key_table = generate_key_table(key, params)

    def readable(self) -> bool:
        return self._base.readable()

    def seekable(self) -> bool:
        return self._base.seekable()

    def writable(self) -> bool:
        return False

    def tell(self) -> int:
        return self._base.tell()

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        return self._base.seek(offset, whence)

    def readinto(self, b: Union[bytearray, memoryview]) -> int:
        position = self._base.tell()
        count = self._base.readinto(b)
        if not count:
            return 0
        chunk = memoryview(b).cast("B")[:count]
        decrypt_span(chunk, self._key_table, self._params, position)
        return count

    def write(self, b) -> int:
        raise io.UnsupportedOperation("SpriteDecryptionStream does not support writing.")

    def truncate(self, size=None) -> int:
        raise io.UnsupportedOperation("SpriteDecryptionStream does not support truncation.")

    def close(self) -> None:
        if not self.closed:
            self._base.close()
        super().close()


def open_entry_stream(view, entry, buffered: bool = True) -> io.IOBase:
    """Open a plaintext stream over *entry* (offset, size, key, params) in *view*."""
    raw = SpriteDecryptionStream(
        ArchiveSliceStream(view, entry.offset, entry.size),
        entry.key,
        entry.params,
    )
    if buffered:
        return io.BufferedReader(raw)
    return raw
