#!/usr/bin/env python3
"""
sprite_extract.py
=================

List, identify and extract NekoNyan "Sprite" DAT archives.

The cipher parameters of each supported game are kept in a JSON scheme file
(see ``sprite_scheme.py``). The game is recognised from the ``app.info`` file
shipped next to the archives, or forced with ``--game "Company/Product"``.

Example usage:

    python sprite_extract.py list  --scheme games.json data/sprite.dat
    python sprite_extract.py identify --scheme games.json data/sprite.dat
    python sprite_extract.py extract --scheme games.json data/sprite.dat \\
        --output-root extracted --convert-images --workers 4 \\
        --report reports/sprite.json
"""

from __future__ import annotations

import argparse
import fnmatch
import hashlib
import json
import logging
import mmap
import os
import shutil
import sys
import time
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field, fields as dataclass_fields
from pathlib import Path
from typing import Dict, IO, List, Optional, Sequence, Tuple

from PIL import Image, UnidentifiedImageError

from sprite_archive import SpriteArchive, SpriteEntry, try_open
from sprite_crypto import SpriteConfigError
from sprite_scheme import game_key, load_scheme, read_app_info
from sprite_stream import open_entry_stream


DEFAULT_OUTPUT_ROOT = Path("extracted")
PROGRESS_EVERY = 500


@dataclass
class ExtractionStats:
    entries_total: int = 0
    extracted: int = 0
    images_converted: int = 0
    skipped_existing: int = 0
    skipped_filtered: int = 0
    failed: int = 0
    bytes_written: int = 0
    failures: List[str] = field(default_factory=list)
    hashes: Dict[str, str] = field(default_factory=dict)


def merge_stats(target: ExtractionStats, source: ExtractionStats) -> None:
    """Merge *source* into *target* by summing int fields and extending containers."""
    for f in dataclass_fields(ExtractionStats):
        src_val = getattr(source, f.name)
        if isinstance(src_val, int):
            setattr(target, f.name, getattr(target, f.name) + src_val)
        elif isinstance(src_val, list):
            getattr(target, f.name).extend(src_val)
        elif isinstance(src_val, dict):
            getattr(target, f.name).update(src_val)


@dataclass(frozen=True)
class ExtractOptions:
    output_root: Path
    force: bool = False
    dry_run: bool = False
    convert_images: bool = False
    compute_hash: bool = False


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("archive", type=Path, help="Path to the Sprite .dat archive.")
    common.add_argument(
        "--scheme",
        type=Path,
        required=True,
        help="JSON file with the cipher parameters of known games.",
    )
    common.add_argument(
        "--game",
        metavar="COMPANY/PRODUCT",
        help="Use this scheme entry instead of reading app.info next to the archive.",
    )
    common.add_argument("--verbose", action="store_true", help="Enable verbose logging.")

    parser = argparse.ArgumentParser(
        description="List and extract NekoNyan Sprite DAT resource archives."
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("list", parents=[common], help="List archive entries.")
    commands.add_parser(
        "identify",
        parents=[common],
        help="Show which game app.info names and whether the scheme knows it.",
    )

    extract = commands.add_parser("extract", parents=[common], help="Extract decrypted entries.")
    extract.add_argument(
        "--output-root",
        type=Path,
        default=DEFAULT_OUTPUT_ROOT,
        help="Directory where entries are written (default: %(default)s).",
    )
    extract.add_argument(
        "--filter",
        action="append",
        default=[],
        metavar="GLOB",
        help="Only extract entries whose name matches GLOB (case-insensitive). Can be repeated.",
    )
    extract.add_argument(
        "--convert-images",
        action="store_true",
        help="Save image entries as PNG instead of their stored format.",
    )
    extract.add_argument(
        "--force",
        action="store_true",
        help="Overwrite files that already exist in the output tree.",
    )
    extract.add_argument(
        "--dry-run",
        action="store_true",
        help="Show planned writes without touching the filesystem.",
    )
    extract.add_argument(
        "--report",
        type=Path,
        help="Optional path to store a JSON summary of the extraction.",
    )
    extract.add_argument(
        "--hash",
        action="store_true",
        help="Include SHA256 hashes of written files in the JSON report.",
    )
    extract.add_argument(
        "--workers",
        type=int,
        default=os.cpu_count() or 4,
        help="Number of parallel worker processes (default: number of CPUs).",
    )
    return parser.parse_args(argv)


def compute_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def entry_output_path(output_root: Path, name: str, index: int) -> Optional[Path]:
    """Map an archive name to a path under *output_root*; None if it would escape."""
    parts = [part for part in name.replace("\\", "/").split("/") if part not in ("", ".")]
    if not parts:
        return output_root / f"entry_{index:05d}.bin"
    if ".." in parts or ":" in parts[0]:
        return None
    return output_root.joinpath(*parts)


def converts_to_png(entry: SpriteEntry, target: Path, options: ExtractOptions) -> bool:
    return options.convert_images and entry.type == "image" and target.suffix.lower() != ".png"


def entry_target(entry: SpriteEntry, index: int, options: ExtractOptions) -> Optional[Path]:
    target = entry_output_path(options.output_root, entry.name, index)
    if target is not None and converts_to_png(entry, target, options):
        target = target.with_suffix(".png")
    return target


def reject_target_collisions(
    jobs: Sequence[Tuple[int, SpriteEntry]],
    options: ExtractOptions,
    stats: ExtractionStats,
) -> List[Tuple[int, SpriteEntry]]:
    """Drop jobs whose output path is already claimed by an earlier entry."""
    claimed: Dict[Path, str] = {}
    kept = []
    for index, entry in jobs:
        target = entry_target(entry, index, options)
        owner = claimed.get(target) if target is not None else None
        if owner is not None:
            stats.entries_total += 1
            stats.failed += 1
            stats.failures.append(f"{entry.name}: output {target} already used by {owner}")
            logging.error("Output collision: %s and %s both map to %s", owner, entry.name, target)
            continue
        if target is not None:
            claimed[target] = entry.name
        kept.append((index, entry))
    return kept


def select_entries(entries: Sequence[SpriteEntry], patterns: Sequence[str]) -> List[Tuple[int, SpriteEntry]]:
    if not patterns:
        return list(enumerate(entries))
    lowered = [pattern.lower() for pattern in patterns]
    selected = []
    for index, entry in enumerate(entries):
        name = entry.name.replace("\\", "/").lower()
        if any(fnmatch.fnmatchcase(name, pattern) for pattern in lowered):
            selected.append((index, entry))
    return selected


def convert_image_to_png(stream: IO[bytes]) -> Image.Image:
    try:
        image = Image.open(stream)
        image.load()
    except UnidentifiedImageError as exc:
        raise ValueError("Unsupported or corrupted image payload") from exc

    if image.mode not in ("RGBA", "RGB", "LA", "L"):
        image = image.convert("RGBA")
    return image


def extract_entry(
    view,
    index: int,
    entry: SpriteEntry,
    options: ExtractOptions,
    stats: ExtractionStats,
) -> bool:
    stats.entries_total += 1

    target = entry_output_path(options.output_root, entry.name, index)
    if target is None:
        stats.failed += 1
        stats.failures.append(f"{entry.name}: name escapes the output root")
        logging.error("Refusing to extract %r outside %s", entry.name, options.output_root)
        return False

    convert = converts_to_png(entry, target, options)
    if convert:
        target = target.with_suffix(".png")

    if target.exists() and not options.force:
        stats.skipped_existing += 1
        logging.debug("Entry already extracted: %s", target)
        return True

    if options.dry_run:
        logging.info("[dry-run][entry] %s -> %s", entry.name, target)
        return False

    if entry.offset + entry.size > len(view):
        logging.warning(
            "Entry %s runs past the end of the archive (offset=0x%X size=%d); output is truncated.",
            entry.name,
            entry.offset,
            entry.size,
        )

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        with open_entry_stream(view, entry) as stream:
            if convert:
                image = convert_image_to_png(stream)
                image.save(target, format="PNG")
            else:
                with target.open("wb") as out:
                    shutil.copyfileobj(stream, out)
        written = target.stat().st_size
        digest = compute_sha256(target) if options.compute_hash else None
    except Exception as exc:  # noqa: BLE001
        stats.failed += 1
        stats.failures.append(f"{entry.name}: {exc}")
        logging.error("Failed to extract %s: %s", entry.name, exc)
        return False

    if convert:
        stats.images_converted += 1
    else:
        stats.extracted += 1
    stats.bytes_written += written
    if digest is not None:
        stats.hashes[entry.name] = digest
    logging.debug("Extracted %s -> %s", entry.name, target)
    return True


def extract_entries(
    view,
    jobs: Sequence[Tuple[int, SpriteEntry]],
    options: ExtractOptions,
) -> ExtractionStats:
    stats = ExtractionStats()
    for index, entry in jobs:
        extract_entry(view, index, entry, options, stats)
    return stats


def _extract_worker(
    archive_path: Path,
    jobs: Sequence[Tuple[int, SpriteEntry]],
    options: ExtractOptions,
) -> ExtractionStats:
    """Worker function for parallel extraction. Returns local stats."""
    try:
        with archive_path.open("rb") as handle, mmap.mmap(
            handle.fileno(), 0, access=mmap.ACCESS_READ
        ) as view:
            return extract_entries(view, jobs, options)
    except Exception as exc:  # noqa: BLE001
        stats = ExtractionStats(entries_total=len(jobs), failed=len(jobs))
        stats.failures.append(f"{archive_path}: unhandled worker error: {exc}")
        logging.error("Extraction worker error for %s: %s", archive_path, exc)
        return stats


def _chunk_jobs(
    jobs: Sequence[Tuple[int, SpriteEntry]],
    chunk_count: int,
) -> List[List[Tuple[int, SpriteEntry]]]:
    size = max(1, -(-len(jobs) // max(1, chunk_count)))
    return [list(jobs[i:i + size]) for i in range(0, len(jobs), size)]


def run_list(archive: SpriteArchive) -> int:
    total = 0
    for index, entry in enumerate(archive.entries):
        print(f"{index:5d}  0x{entry.offset:08X}  {entry.size:10d}  {entry.type or '-':8s}  {entry.name}")
        total += entry.size
    print(f"{len(archive)} entries, {total} bytes")
    return 0


def run_identify(archive_path: Path, scheme) -> int:
    info = read_app_info(archive_path.parent)
    if info is None:
        print(f"No usable app.info next to {archive_path}")
        return 1
    key = game_key(*info)
    known = key in scheme
    print(f"company: {info[0]}")
    print(f"product: {info[1]}")
    print(f"scheme:  {key} ({'known' if known else 'unknown'})")
    return 0 if known else 1


def run_extract(archive: SpriteArchive, args: argparse.Namespace) -> int:
    options = ExtractOptions(
        output_root=args.output_root.resolve(),
        force=args.force,
        dry_run=args.dry_run,
        convert_images=args.convert_images,
        compute_hash=args.hash,
    )
    jobs = select_entries(archive.entries, args.filter)
    stats = ExtractionStats(skipped_filtered=len(archive) - len(jobs))
    jobs = reject_target_collisions(jobs, options, stats)
    total = len(jobs)
    workers = max(1, args.workers)
    logging.info("Extracting %d of %d entries to %s", total, len(archive), options.output_root)
    start_time = time.time()

    if workers == 1 or total < 2:
        for done, (index, entry) in enumerate(jobs, 1):
            extract_entry(archive.view, index, entry, options, stats)
            if done % PROGRESS_EVERY == 0 or done == total:
                logging.info(
                    "Progress: %d/%d (%.1f%%) - extracted=%d failed=%d [%.1fs]",
                    done, total, 100.0 * done / total,
                    stats.extracted + stats.images_converted,
                    stats.failed,
                    time.time() - start_time,
                )
    else:
        chunks = _chunk_jobs(jobs, workers * 4)
        completed = 0
        with ProcessPoolExecutor(max_workers=workers) as executor:
            results = executor.map(
                _extract_worker,
                [archive.path] * len(chunks),
                chunks,
                [options] * len(chunks),
            )
            for chunk, worker_stats in zip(chunks, results):
                merge_stats(stats, worker_stats)
                completed += len(chunk)
                logging.info(
                    "Progress: %d/%d (%.1f%%) - extracted=%d failed=%d [%.1fs]",
                    completed, total, 100.0 * completed / total,
                    stats.extracted + stats.images_converted,
                    stats.failed,
                    time.time() - start_time,
                )

    logging.info(
        "Extraction complete in %.1fs: %d extracted, %d converted to PNG, %d skipped (existing=%d, filtered=%d), %d failed",
        time.time() - start_time,
        stats.extracted,
        stats.images_converted,
        stats.skipped_existing + stats.skipped_filtered,
        stats.skipped_existing,
        stats.skipped_filtered,
        stats.failed,
    )

    if args.report:
        if options.dry_run:
            logging.info("[dry-run] report would be written to %s", args.report)
        else:
            write_report(args.report, archive, stats)
            logging.info("Report written to %s", args.report)

    if stats.failed:
        logging.warning("%d entr%s failed extraction", stats.failed, "y" if stats.failed == 1 else "ies")
    return 0 if stats.failed == 0 else 1


def write_report(report_path: Path, archive: SpriteArchive, stats: ExtractionStats) -> None:
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report = {
        "archive": str(archive.path),
        "entry_count": len(archive),
        "entries_total": stats.entries_total,
        "extracted": stats.extracted,
        "images_converted": stats.images_converted,
        "skipped_existing": stats.skipped_existing,
        "skipped_filtered": stats.skipped_filtered,
        "failed": stats.failed,
        "bytes_written": stats.bytes_written,
        "failures": stats.failures,
    }
    if stats.hashes:
        report["sha256"] = dict(sorted(stats.hashes.items()))
    report_path.write_text(json.dumps(report, indent=2))


def main(argv: Sequence[str]) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )

    try:
        scheme = load_scheme(args.scheme)
    except (OSError, SpriteConfigError) as exc:
        logging.error("Cannot load scheme %s: %s", args.scheme, exc)
        return 1

    if args.command == "identify":
        return run_identify(args.archive, scheme)

    try:
        archive = try_open(args.archive, scheme, game=args.game)
    except (OSError, SpriteConfigError) as exc:
        logging.error("Cannot open %s: %s", args.archive, exc)
        return 1
    if archive is None:
        logging.error("%s is not a Sprite DAT archive of a known game.", args.archive)
        return 1

    with archive:
        if args.command == "list":
            return run_list(archive)
        return run_extract(archive, args)


def cli() -> int:
    return main(sys.argv[1:])


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
