"""Tests for file discovery, the rename plan and the people commands."""

from pathlib import Path

import pytest

import photo_renamer.main as m
from photo_renamer.models import LifecycleState
from photo_renamer.scheduler import ResultsStore, new_record


def test_parse_extensions_normalizes_case_and_dots() -> None:
    assert m._parse_extensions(" .JPG, heic ,, .") == {".jpg", ".heic"}  # noqa: SLF001


def test_resolve_image_files_filters_directories_case_insensitively(tmp_path: Path) -> None:
    """Directory contents are filtered by extension; explicit files are always kept."""
    (tmp_path / "b.JPG").write_bytes(b"")
    (tmp_path / "a.jpg").write_bytes(b"")
    (tmp_path / "notes.txt").write_text("x")
    nested = tmp_path / "sub"
    nested.mkdir()
    (nested / "c.jpg").write_bytes(b"")

    flat = m._resolve_image_files([tmp_path], {".jpg"}, recursive=False)  # noqa: SLF001
    deep = m._resolve_image_files([tmp_path], {".jpg"}, recursive=True)  # noqa: SLF001
    explicit = m._resolve_image_files(  # noqa: SLF001
        [tmp_path / "notes.txt", tmp_path],
        {".jpg"},
        recursive=False,
    )

    assert [p.name for p in flat] == ["a.jpg", "b.JPG"]
    assert sorted(p.name for p in deep) == ["a.jpg", "b.JPG", "c.jpg"]
    assert [p.name for p in explicit] == ["notes.txt", "a.jpg", "b.JPG"]


def test_resolve_image_batch_exits_without_inputs() -> None:
    with pytest.raises(SystemExit):
        m._resolve_image_batch(None, "jpg", recursive=False)  # noqa: SLF001


def _finished_store(tmp_path: Path, plan: dict[str, str]) -> ResultsStore:
    store = ResultsStore()
    for original, suggested in plan.items():
        path = tmp_path / original
        path.write_bytes(b"\xff\xd8")
        record = new_record(path)
        record.suggested_name = suggested
        record.advance(LifecycleState.DONE)
        store.publish(record)
    return store


def test_apply_renames_dry_run_only_prints(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    store = _finished_store(tmp_path, {"IMG_0001.jpg": "2023_07_04_beach.jpg"})

    count = m.apply_renames(store, dry_run=True)

    assert count == 1
    assert "IMG_0001.jpg -> 2023_07_04_beach.jpg" in capsys.readouterr().out
    assert (tmp_path / "IMG_0001.jpg").exists()
    assert not (tmp_path / "2023_07_04_beach.jpg").exists()


def test_apply_renames_moves_sidecar_and_never_overwrites(tmp_path: Path) -> None:
    """Colliding suggestions get numeric suffixes and sidecars follow their photo."""
    store = _finished_store(
        tmp_path,
        {"IMG_0001.jpg": "2023_07_04_beach.jpg", "IMG_0002.jpg": "2023_07_04_beach.jpg"},
    )
    (tmp_path / "IMG_0001.xmp").write_text("<x/>")
    (tmp_path / "2023_07_04_beach.jpg").write_bytes(b"existing")

    count = m.apply_renames(store, dry_run=False)

    assert count == 2
    assert (tmp_path / "2023_07_04_beach.jpg").read_bytes() == b"existing"
    assert (tmp_path / "2023_07_04_beach_2.jpg").exists()
    assert (tmp_path / "2023_07_04_beach_2.xmp").exists()
    assert (tmp_path / "2023_07_04_beach_3.jpg").exists()
    assert not (tmp_path / "IMG_0001.jpg").exists()


def test_apply_renames_never_replaces_another_photos_sidecar(tmp_path: Path) -> None:
    """A target whose .xmp already belongs to another photo gets a numeric suffix."""
    store = _finished_store(tmp_path, {"IMG_0001.jpg": "2023_07_04_beach.jpg"})
    (tmp_path / "IMG_0001.xmp").write_text("<mine/>")
    (tmp_path / "2023_07_04_beach.xmp").write_text("<other/>")

    m.apply_renames(store, dry_run=False)

    assert (tmp_path / "2023_07_04_beach.xmp").read_text() == "<other/>"
    assert (tmp_path / "2023_07_04_beach_2.jpg").exists()
    assert (tmp_path / "2023_07_04_beach_2.xmp").read_text() == "<mine/>"


def test_apply_renames_rolls_back_when_sidecar_cannot_move(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed sidecar move puts the photo back under its original name."""
    store = _finished_store(tmp_path, {"IMG_0001.jpg": "2023_07_04_beach.jpg"})
    (tmp_path / "IMG_0001.xmp").write_text("<mine/>")
    original_rename = Path.rename

    def rename(self: Path, target: Path) -> Path:
        if self.suffix == ".xmp":
            msg = "read-only"
            raise PermissionError(msg)
        return original_rename(self, target)

    monkeypatch.setattr(Path, "rename", rename)

    count = m.apply_renames(store, dry_run=False)

    assert count == 0
    assert (tmp_path / "IMG_0001.jpg").exists()
    assert (tmp_path / "IMG_0001.xmp").read_text() == "<mine/>"
    assert not (tmp_path / "2023_07_04_beach.jpg").exists()


def test_apply_renames_skips_unchanged_and_unfinished(tmp_path: Path) -> None:
    store = _finished_store(tmp_path, {"2022_12_24_tree.jpg": "2022_12_24_tree.jpg"})
    queued = tmp_path / "IMG_0009.jpg"
    queued.write_bytes(b"")
    store.publish(new_record(queued))

    assert m.apply_renames(store, dry_run=False) == 0
    assert queued.exists()


def test_people_commands_round_trip(tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
    """add prints the new id, list shows it, remove deletes it."""
    people_file = tmp_path / "people.json"

    m.add_person("Mom", description="glasses", aliases=["Mother"], known_people_file=people_file)
    person_id = capsys.readouterr().out.strip()
    m.list_people(known_people_file=people_file)
    listing = capsys.readouterr().out

    assert f"{person_id}  Mom (Mother)  glasses" in listing

    m.remove_person(person_id, known_people_file=people_file)
    with pytest.raises(SystemExit):
        m.remove_person(person_id, known_people_file=people_file)
