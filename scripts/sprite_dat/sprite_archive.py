#!/usr/bin/env python3
"""
sprite_archive.py
=================

Reader for NekoNyan "Sprite" DAT resource archives.

Layout (all integers little-endian):

* ``[0, 1024)``       header. The entry count is the sum of the int32 words
                      from a game-specific offset up to byte 1020. The TOC
                      seed lives at 0xD4, the name-block seed at 0x5C.
* ``[1024, +16*N)``   encrypted TOC, one ``<IiII`` record per entry
                      (size, name offset, key, data offset).
* ``[.., data_addr)`` encrypted name block (NUL-terminated names).
* ``[data_addr, EOF)`` payloads, each encrypted with its entry's key.

Probing never raises for a file that is simply not this format: the readers
return ``None`` and log the reason at debug level, so callers can try other
formats against the same file.
"""

from __future__ import annotations

import io
import logging
import mmap
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional

from sprite_crypto import HEADER_SIZE, CipherParams, SpriteConfigError, decrypt_with_seed
from sprite_scheme import GameScheme, identify_game
from sprite_stream import open_entry_stream


TOC_SEED_OFFSET = 0xD4
CONST_SEED_OFFSET = 0x5C
FILE_COUNT_END = HEADER_SIZE - 4
TOC_RECORD = struct.Struct("<IiII")
TOC_RECORD_SIZE = TOC_RECORD.size  # 16

ENTRY_TYPES_BY_EXT: Dict[str, str] = {
    ".png": "image",
    ".jpg": "image",
    ".jpeg": "image",
    ".bmp": "image",
    ".tga": "image",
    ".gif": "image",
    ".webp": "image",
    ".ogg": "audio",
    ".wav": "audio",
    ".mp3": "audio",
    ".m4a": "audio",
    ".opus": "audio",
    ".mp4": "video",
    ".webm": "video",
    ".wmv": "video",
    ".mpg": "video",
    ".txt": "script",
    ".json": "script",
    ".lua": "script",
    ".csv": "script",
    ".xml": "script",
    ".ini": "script",
    ".dat": "archive",
    ".zip": "archive",
}


@dataclass(frozen=True)
class SpriteEntry:
    name: str
    type: str
    offset: int
    size: int
    key: int
    params: CipherParams


def entry_type_from_name(name: str) -> str:
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    dot = base.rfind(".")
    if dot <= 0:
        return ""
    return ENTRY_TYPES_BY_EXT.get(base[dot:].lower(), "")


def read_file_count(view, begin: int) -> int:
    """Sum the int32 words in ``[begin, 1020)`` with 32-bit signed wraparound."""
    total = 0
    for pos in range(begin, FILE_COUNT_END, 4):
        total += struct.unpack_from("<i", view, pos)[0]
    total &= 0xFFFFFFFF
    return total - 0x100000000 if total & 0x80000000 else total


def read_entry_name(block: bytes, const_addr: int) -> str:
    if const_addr < 0 or const_addr >= len(block):
        return ""
    end = block.find(b"\x00", const_addr)
    if end < 0:
        end = len(block)
    return bytes(block[const_addr:end]).decode("ascii", errors="replace")


def _not_this_format(source: str, reason: str, *args) -> None:
    logging.debug("%s: not a Sprite DAT archive (" + reason + ")", source, *args)
    return None


def parse_archive(view, params: CipherParams, source: str = "<memory>") -> Optional[List[SpriteEntry]]:
    """Decrypt the TOC and name block of *view* and return its entries.

    *view* is any bytes-like object covering the whole archive (``bytes``,
    ``mmap``...). Returns ``None`` when the data does not look like a Sprite
    archive for *params*.
    """
    total_size = len(view)
    if total_size < HEADER_SIZE:
        return _not_this_format(source, "%d bytes, header needs %d", total_size, HEADER_SIZE)

    file_count = read_file_count(view, params.file_count_header_offset)
    if file_count == 0:
        return []
    if file_count < 0:
        return _not_this_format(source, "negative file count %d", file_count)

    toc_seed = struct.unpack_from("<I", view, TOC_SEED_OFFSET)[0]
    const_seed = struct.unpack_from("<I", view, CONST_SEED_OFFSET)[0]

    toc_size = TOC_RECORD_SIZE * file_count
    if toc_size > total_size - HEADER_SIZE:
        return _not_this_format(source, "TOC of %d entries overruns the file", file_count)

    toc = bytearray(view[HEADER_SIZE:HEADER_SIZE + toc_size])
    if len(toc) != toc_size:
        return _not_this_format(source, "short TOC read")
    decrypt_with_seed(toc, toc_seed, params)

    const_begin = HEADER_SIZE + toc_size
    data_begin = struct.unpack_from("<I", toc, 12)[0]
    if data_begin > total_size:
        return _not_this_format(source, "data offset 0x%X beyond end of file", data_begin)
    const_size = data_begin - const_begin
    if const_size < 0:
        return _not_this_format(source, "data offset 0x%X inside the TOC", data_begin)

    names = bytearray(view[const_begin:data_begin])
    if len(names) != const_size:
        return _not_this_format(source, "short name block read")
    decrypt_with_seed(names, const_seed, params)

    entries: List[SpriteEntry] = []
    for size, const_addr, key, data_addr in TOC_RECORD.iter_unpack(toc):
        name = read_entry_name(names, const_addr)
        entries.append(
            SpriteEntry(
                name=name,
                type=entry_type_from_name(name),
                offset=data_addr,
                size=size,
                key=key,
                params=params,
            )
        )

    logging.debug("%s: %d entries, payload starts at 0x%X", source, len(entries), data_begin)
    return entries


class SpriteArchive:
    """Opened archive: entry list plus the read-only view it was parsed from."""

    def __init__(
        self,
        path: Path,
        entries: List[SpriteEntry],
        params: CipherParams,
        view,
        handle: Optional[BinaryIO] = None,
    ) -> None:
        self.path = path
        self.entries = entries
        self.params = params
        self._view = view
        self._handle = handle

    @property
    def view(self):
        return self._view

    def __iter__(self) -> Iterator[SpriteEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __enter__(self) -> "SpriteArchive":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def open_entry(self, entry: SpriteEntry, buffered: bool = True) -> io.IOBase:
        return open_entry_stream(self._view, entry, buffered=buffered)

    def read_entry(self, entry: SpriteEntry) -> bytes:
        with self.open_entry(entry) as stream:
            return stream.read()

    def close(self) -> None:
        if isinstance(self._view, mmap.mmap) and not self._view.closed:
            self._view.close()
        if self._handle is not None:
            self._handle.close()
            self._handle = None


def try_open(path: Path, scheme: GameScheme, game: Optional[str] = None) -> Optional[SpriteArchive]:
    """Open *path* as a Sprite DAT archive.

    The cipher parameters come from the ``app.info`` next to the archive,
    or from the scheme entry named by *game* when given.
    """
    path = Path(path)
    source = str(path)
    file_size = path.stat().st_size
    if file_size < HEADER_SIZE:
        return _not_this_format(source, "%d bytes, header needs %d", file_size, HEADER_SIZE)

    if game is not None:
        params = scheme.get(game)
        if params is None:
            raise SpriteConfigError(f"Game {game!r} is not in the scheme")
    else:
        params = identify_game(path.parent, scheme)
        if params is None:
            return _not_this_format(source, "game not identified")

    handle = path.open("rb")
    try:
        view = mmap.mmap(handle.fileno(), 0, access=mmap.ACCESS_READ)
    except (OSError, ValueError):
        handle.close()
        raise

    try:
        entries = parse_archive(view, params, source)
    except BaseException:
        view.close()
        handle.close()
        raise

    if entries is None:
        view.close()
        handle.close()
        return None
    return SpriteArchive(path, entries, params, view, handle)
