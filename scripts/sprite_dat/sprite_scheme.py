#!/usr/bin/env python3
"""
sprite_scheme.py
================

Known-game registry for Sprite DAT archives and the ``app.info`` lookup that
selects an entry from it.

Scheme files are JSON::

    {
      "games": {
        "Company/Product": {
          "file_count_header_offset": 960,
          "key_init_mul": "0x0001A2B3",
          ...
        }
      }
    }

Integer fields may be JSON numbers or ``0x`` prefixed hex strings.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields as dataclass_fields
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple, Union

from sprite_crypto import U32_FIELDS, CipherParams, SpriteConfigError


APP_INFO_NAME = "app.info"

PARAM_FIELDS = tuple(f.name for f in dataclass_fields(CipherParams))


@dataclass
class GameScheme:
    known_games: Dict[str, CipherParams] = field(default_factory=dict)

    def get(self, key: str) -> Optional[CipherParams]:
        return self.known_games.get(key)

    def add(self, company: str, product: str, params: CipherParams) -> None:
        self.known_games[game_key(company, product)] = params

    def __contains__(self, key: object) -> bool:
        return key in self.known_games

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self.known_games))

    def __len__(self) -> int:
        return len(self.known_games)


def game_key(company: str, product: str) -> str:
    return f"{company}/{product}"


def parse_int_field(raw: Union[int, str], name: str) -> int:
    if isinstance(raw, bool):
        raise SpriteConfigError(f"{name}: expected integer, got {raw!r}")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        token = raw.strip().lower()
        try:
            return int(token, 16) if token.startswith("0x") else int(token)
        except ValueError as exc:
            raise SpriteConfigError(f"{name}: invalid integer {raw!r}") from exc
    raise SpriteConfigError(f"{name}: expected integer, got {type(raw).__name__}")


def params_from_dict(raw: Dict[str, object], game: str = "") -> CipherParams:
    if not isinstance(raw, dict):
        raise SpriteConfigError(f"{game}: parameter record must be an object")

    unknown = sorted(set(raw) - set(PARAM_FIELDS))
    if unknown:
        raise SpriteConfigError(f"{game}: unknown parameter(s): {', '.join(unknown)}")
    missing = [name for name in PARAM_FIELDS if name not in raw]
    if missing:
        raise SpriteConfigError(f"{game}: missing parameter(s): {', '.join(missing)}")

    values = {name: parse_int_field(raw[name], f"{game}.{name}") for name in PARAM_FIELDS}
    try:
        return CipherParams(**values)
    except SpriteConfigError as exc:
        raise SpriteConfigError(f"{game}: {exc}") from exc


def params_to_dict(params: CipherParams) -> Dict[str, Union[int, str]]:
    out: Dict[str, Union[int, str]] = {}
    for name, value in params.to_dict().items():
        out[name] = f"0x{value:08X}" if name in U32_FIELDS else value
    return out


def load_scheme(path: Path) -> GameScheme:
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise SpriteConfigError(f"Scheme file {path} is not valid JSON: {exc}") from exc

    games = payload.get("games") if isinstance(payload, dict) else None
    if not isinstance(games, dict):
        raise SpriteConfigError(f"Scheme file {path} has no 'games' object")

    scheme = GameScheme()
    for key, raw in games.items():
        if "/" not in key:
            raise SpriteConfigError(f"Game key must look like 'Company/Product': {key!r}")
        scheme.known_games[key] = params_from_dict(raw, key)

    logging.debug("Loaded %d game(s) from %s", len(scheme), path)
    return scheme


def save_scheme(scheme: GameScheme, path: Path) -> None:
    payload = {"games": {key: params_to_dict(scheme.known_games[key]) for key in scheme}}
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


def find_case_insensitive_file(directory: Path, file_name: str) -> Optional[Path]:
    direct = directory / file_name
    if direct.is_file():
        return direct
    if not directory.is_dir():
        return None
    lowered = file_name.lower()
    for child in directory.iterdir():
        if child.is_file() and child.name.lower() == lowered:
            return child
    return None


def read_app_info(directory: Path) -> Optional[Tuple[str, str]]:
    """Return (company, product) from the ``app.info`` next to an archive."""
    info_path = find_case_insensitive_file(Path(directory), APP_INFO_NAME)
    if info_path is None:
        logging.debug("No %s in %s", APP_INFO_NAME, directory)
        return None

    try:
        text = info_path.read_text(encoding="utf-8-sig", errors="replace")
    except OSError as exc:
        logging.debug("Cannot read %s: %s", info_path, exc)
        return None

    # Universal newlines already folded "\r\n" and "\r"; other separators stay in the line.
    lines = [line.rstrip("\r") for line in text.split("\n")]
    company = lines[0] if len(lines) > 0 else ""
    product = lines[1] if len(lines) > 1 else ""
    if not company or not product:
        logging.debug("Incomplete %s: %r", info_path, lines[:2])
        return None
    return company, product


def identify_game(directory: Path, scheme: GameScheme) -> Optional[CipherParams]:
    info = read_app_info(directory)
    if info is None:
        return None

    key = game_key(*info)
    params = scheme.get(key)
    if params is None:
        logging.debug("Game %r is not in the scheme", key)
    return params
