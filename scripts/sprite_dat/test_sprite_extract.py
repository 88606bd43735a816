#!/usr/bin/env python3
import contextlib
import hashlib
import io
import json
import tempfile
import unittest
from pathlib import Path
import sys

from PIL import Image


SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

import sprite_extract as extract
from sprite_archive import parse_archive
from sprite_fixtures import SAMPLE_PARAMS, build_archive
from sprite_scheme import GameScheme, save_scheme


def _bmp_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (4, 3), (255, 0, 0)).save(buffer, format="BMP")
    return buffer.getvalue()


FILES = [
    ("bg/red.bmp", _bmp_bytes()),
    ("script\\main.txt", b"@jump start\n"),
    ("voice/v001.ogg", bytes(range(256)) * 4),
]


class ExtractCliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._temp = tempfile.TemporaryDirectory()
        self.root = Path(self._temp.name)
        game_dir = self.root / "game"
        game_dir.mkdir()
        self.archive = game_dir / "sprite.dat"
        self.archive.write_bytes(build_archive(FILES))
        (game_dir / "app.info").write_text("NekoNyan\nSample Game\n", encoding="utf-8")

        scheme = GameScheme()
        scheme.add("NekoNyan", "Sample Game", SAMPLE_PARAMS)
        self.scheme_path = self.root / "games.json"
        save_scheme(scheme, self.scheme_path)
        self.out = self.root / "out"

    def tearDown(self) -> None:
        self._temp.cleanup()

    def _run(self, command: str, *extra: str) -> int:
        argv = [command, str(self.archive), "--scheme", str(self.scheme_path), *extra]
        with contextlib.redirect_stdout(io.StringIO()) as captured:
            code = extract.main(argv)
        self.stdout = captured.getvalue()
        return code

    def test_list_prints_every_entry(self) -> None:
        self.assertEqual(self._run("list"), 0)
        for name, _payload in FILES:
            self.assertIn(name, self.stdout)
        self.assertIn("3 entries", self.stdout)

    def test_identify_reports_known_game(self) -> None:
        self.assertEqual(self._run("identify"), 0)
        self.assertIn("NekoNyan/Sample Game (known)", self.stdout)

    def test_extract_writes_plaintext_and_report(self) -> None:
        report = self.root / "reports" / "run.json"
        code = self._run(
            "extract", "--output-root", str(self.out), "--workers", "1",
            "--report", str(report), "--hash",
        )
        self.assertEqual(code, 0)
        self.assertEqual((self.out / "bg" / "red.bmp").read_bytes(), FILES[0][1])
        self.assertEqual((self.out / "script" / "main.txt").read_bytes(), FILES[1][1])
        self.assertEqual((self.out / "voice" / "v001.ogg").read_bytes(), FILES[2][1])

        payload = json.loads(report.read_text())
        self.assertEqual(payload["extracted"], 3)
        self.assertEqual(payload["failed"], 0)
        self.assertEqual(payload["bytes_written"], sum(len(p) for _, p in FILES))
        self.assertEqual(
            payload["sha256"]["voice/v001.ogg"],
            hashlib.sha256(FILES[2][1]).hexdigest(),
        )

    def test_existing_outputs_are_skipped_unless_forced(self) -> None:
        self.assertEqual(self._run("extract", "--output-root", str(self.out), "--workers", "1"), 0)
        target = self.out / "script" / "main.txt"
        target.write_bytes(b"edited")

        report = self.root / "second.json"
        self._run("extract", "--output-root", str(self.out), "--workers", "1", "--report", str(report))
        self.assertEqual(target.read_bytes(), b"edited")
        self.assertEqual(json.loads(report.read_text())["skipped_existing"], 3)

        self._run("extract", "--output-root", str(self.out), "--workers", "1", "--force")
        self.assertEqual(target.read_bytes(), FILES[1][1])

    def test_convert_images_saves_png(self) -> None:
        code = self._run(
            "extract", "--output-root", str(self.out), "--workers", "1",
            "--convert-images", "--filter", "bg/*",
        )
        self.assertEqual(code, 0)
        png_path = self.out / "bg" / "red.png"
        self.assertFalse((self.out / "bg" / "red.bmp").exists())
        self.assertFalse((self.out / "script").exists())
        with Image.open(png_path) as image:
            self.assertEqual(image.format, "PNG")
            self.assertEqual(image.size, (4, 3))
            self.assertEqual(image.convert("RGB").getpixel((0, 0)), (255, 0, 0))

    def test_worker_pool_run_merges_reports(self) -> None:
        report = self.root / "pool.json"
        code = self._run(
            "extract", "--output-root", str(self.out), "--workers", "2",
            "--report", str(report), "--hash",
        )
        self.assertEqual(code, 0)
        for name, payload in FILES:
            self.assertEqual(extract.entry_output_path(self.out, name, 0).read_bytes(), payload)

        payload = json.loads(report.read_text())
        self.assertEqual(payload["entries_total"], 3)
        self.assertEqual(payload["extracted"], 3)
        self.assertEqual(payload["failed"], 0)
        self.assertEqual(payload["bytes_written"], sum(len(p) for _, p in FILES))
        self.assertEqual(sorted(payload["sha256"]), sorted(name for name, _ in FILES))

    def test_file_and_directory_name_clash_fails_one_entry(self) -> None:
        self.archive.write_bytes(build_archive([("a", b"x"), ("a/b.txt", b"y"), ("c.txt", b"z")]))
        report = self.root / "clash.json"
        code = self._run("extract", "--output-root", str(self.out), "--workers", "1", "--report", str(report))
        self.assertEqual(code, 1)
        self.assertEqual((self.out / "a").read_bytes(), b"x")
        self.assertEqual((self.out / "c.txt").read_bytes(), b"z")

        payload = json.loads(report.read_text())
        self.assertEqual(payload["extracted"], 2)
        self.assertEqual(payload["failed"], 1)
        self.assertTrue(payload["failures"][0].startswith("a/b.txt:"))

    def test_converted_image_cannot_replace_existing_png_entry(self) -> None:
        png = io.BytesIO()
        Image.new("RGB", (2, 2), (0, 0, 255)).save(png, format="PNG")
        self.archive.write_bytes(build_archive([("x.bmp", _bmp_bytes()), ("x.png", png.getvalue())]))
        report = self.root / "collide.json"
        code = self._run(
            "extract", "--output-root", str(self.out), "--workers", "1",
            "--convert-images", "--force", "--report", str(report),
        )
        self.assertEqual(code, 1)
        with Image.open(self.out / "x.png") as image:
            self.assertEqual(image.convert("RGB").getpixel((0, 0)), (255, 0, 0))

        payload = json.loads(report.read_text())
        self.assertEqual(payload["images_converted"], 1)
        self.assertEqual(payload["skipped_existing"], 0)
        self.assertEqual(payload["failed"], 1)
        self.assertIn("x.png", payload["failures"][0])

    def test_dry_run_writes_nothing(self) -> None:
        self.assertEqual(self._run("extract", "--output-root", str(self.out), "--workers", "1", "--dry-run"), 0)
        self.assertFalse(self.out.exists())

    def test_unknown_archive_fails(self) -> None:
        (self.archive.parent / "app.info").write_text("Other\nGame\n", encoding="utf-8")
        self.assertEqual(self._run("list"), 1)
        self.assertEqual(self._run("identify"), 1)
        self.assertEqual(self._run("list", "--game", "NekoNyan/Sample Game"), 0)
        self.assertEqual(self._run("list", "--game", "Missing/Game"), 1)

    def test_unsafe_names_are_refused(self) -> None:
        self.archive.write_bytes(build_archive([("../escape.txt", b"x"), ("ok.txt", b"y")]))
        code = self._run("extract", "--output-root", str(self.out), "--workers", "1")
        self.assertEqual(code, 1)
        self.assertFalse((self.root / "escape.txt").exists())
        self.assertEqual((self.out / "ok.txt").read_bytes(), b"y")


class ExtractHelperTests(unittest.TestCase):
    def test_entry_output_path(self) -> None:
        root = Path("/tmp/out")
        self.assertEqual(extract.entry_output_path(root, "a\\b/c.png", 0), root / "a" / "b" / "c.png")
        self.assertEqual(extract.entry_output_path(root, "./x//y.txt", 0), root / "x" / "y.txt")
        self.assertEqual(extract.entry_output_path(root, "", 7), root / "entry_00007.bin")
        self.assertIsNone(extract.entry_output_path(root, "a/../../etc/passwd", 0))
        self.assertIsNone(extract.entry_output_path(root, "C:/windows/x", 0))

    def test_select_entries_is_case_insensitive(self) -> None:
        entries = parse_archive(build_archive(FILES), SAMPLE_PARAMS)
        selected = extract.select_entries(entries, ["SCRIPT/*", "*.OGG"])
        self.assertEqual([index for index, _ in selected], [1, 2])
        self.assertEqual(len(extract.select_entries(entries, [])), 3)

    def test_chunk_jobs_covers_every_job(self) -> None:
        jobs = [(i, None) for i in range(10)]
        chunks = extract._chunk_jobs(jobs, 4)
        self.assertEqual([job for chunk in chunks for job in chunk], jobs)
        self.assertLessEqual(len(chunks), 4)

    def test_worker_extracts_its_chunk_and_stats_merge(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            archive_path = root / "sprite.dat"
            archive_path.write_bytes(build_archive(FILES))
            entries = parse_archive(archive_path.read_bytes(), SAMPLE_PARAMS)
            options = extract.ExtractOptions(output_root=root / "out")

            first = extract._extract_worker(archive_path, [(0, entries[0])], options)
            second = extract._extract_worker(archive_path, [(1, entries[1]), (2, entries[2])], options)
            total = extract.ExtractionStats()
            extract.merge_stats(total, first)
            extract.merge_stats(total, second)

            self.assertEqual(total.extracted, 3)
            self.assertEqual(total.entries_total, 3)
            self.assertEqual((root / "out" / "voice" / "v001.ogg").read_bytes(), FILES[2][1])

    def test_worker_reports_unreadable_archive(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            options = extract.ExtractOptions(output_root=Path(temp_dir))
            stats = extract._extract_worker(Path(temp_dir) / "missing.dat", [(0, None)], options)
        self.assertEqual(stats.failed, 1)
        self.assertEqual(len(stats.failures), 1)


if __name__ == "__main__":
    unittest.main()
