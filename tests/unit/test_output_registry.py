import json
from videoconverter.infrastructure.output_registry import LEDGER_NAME, OutputRegistry


def test_free_destination_is_claimed_and_kept(tmp_path):
    out = tmp_path / "converted"
    registry = OutputRegistry([out])
    src = tmp_path / "in" / "movie.mkv"

    assert registry.claim(src, out / "movie.mp4") == out / "movie.mp4"
    assert registry.claim(src, out / "movie.mp4") == out / "movie.mp4"
    assert registry.owner(out / "movie.mp4") == src


def test_same_stem_sources_get_distinct_destinations(tmp_path):
    out = tmp_path / "converted"
    registry = OutputRegistry([out])
    mkv, mp4, avi = (tmp_path / "in" / f"movie.{ext}" for ext in ("mkv", "mp4", "avi"))

    first = registry.claim(mkv, out / "movie.mp4")
    second = registry.claim(mp4, out / "movie.mp4")
    third = registry.claim(avi, out / "movie.mp4")

    assert first == out / "movie.mp4"
    assert second == out / "movie.mp4.mp4"
    assert third == out / "movie.avi.mp4"
    assert registry.owner(second) == mp4


def test_numbered_name_when_alternatives_are_taken(tmp_path):
    out = tmp_path / "converted"
    out.mkdir()
    (out / "movie.mp4").write_bytes(b"someone else's")
    (out / "movie.mkv.mp4").write_bytes(b"also taken")
    registry = OutputRegistry([out])

    assert registry.claim(tmp_path / "in" / "movie.mkv", out / "movie.mp4") == out / "movie (1).mp4"


def test_existing_unowned_file_is_never_claimed(tmp_path):
    out = tmp_path / "converted"
    out.mkdir()
    (out / "clip.mp4").write_bytes(b"not ours")
    registry = OutputRegistry([out])

    dest = registry.claim(tmp_path / "in" / "clip.mkv", out / "clip.mp4")

    assert dest == out / "clip.mkv.mp4"
    assert (out / "clip.mp4").read_bytes() == b"not ours"


def test_assignments_survive_restart(tmp_path):
    out = tmp_path / "converted"
    src = tmp_path / "in" / "sub" / "movie.mkv"
    OutputRegistry([out]).claim(src, out / "sub" / "movie.mp4")

    ledger = json.loads((out / LEDGER_NAME).read_text())
    assert ledger == {"sub/movie.mp4": str(src)}
    assert OutputRegistry([out]).owner(out / "sub" / "movie.mp4") == src


def test_unreadable_ledger_is_ignored(tmp_path, caplog):
    out = tmp_path / "converted"
    out.mkdir()
    (out / LEDGER_NAME).write_text("{broken")

    registry = OutputRegistry([out])

    assert registry.owner(out / "movie.mp4") is None
    assert "unreadable output ledger" in caplog.text


def test_each_output_dir_keeps_its_own_ledger(tmp_path):
    out_a, out_b = tmp_path / "a" / "converted", tmp_path / "b" / "converted"
    registry = OutputRegistry([out_a, out_b])

    registry.claim(tmp_path / "a" / "x.mkv", out_a / "x.mp4")
    registry.claim(tmp_path / "b" / "y.mkv", out_b / "y.mp4")

    assert json.loads((out_a / LEDGER_NAME).read_text()) == {"x.mp4": str(tmp_path / "a" / "x.mkv")}
    assert json.loads((out_b / LEDGER_NAME).read_text()) == {"y.mp4": str(tmp_path / "b" / "y.mkv")}
