from __future__ import annotations

from pathlib import Path

import pytest
from _sketches import circle_image, settings, square_image

from scripts.serve import parse_args as parse_serve_args
from scripts.train_from_folder import FolderArgs, discover, parse_args, run


def _write_folder(root: Path) -> None:
    (root / "circle").mkdir(parents=True)
    (root / "square").mkdir(parents=True)
    (root / "empty").mkdir(parents=True)
    for i in range(2):
        circle_image(offset=i * 3).save(root / "circle" / f"{i}.png")
        square_image(offset=i * 3).save(root / "square" / f"{i}.png")
    (root / "square" / "notes.txt").write_text("ignored", encoding="utf-8")
    (root / "square" / "broken.png").write_bytes(b"not an image")


def test_discover_maps_labels_to_images(tmp_path: Path) -> None:
    _write_folder(tmp_path)
    found = discover(tmp_path)
    assert list(found) == ["circle", "square"]
    assert [p.name for p in found["circle"]] == ["0.png", "1.png"]
    assert [p.name for p in found["square"]] == ["0.png", "1.png", "broken.png"]


def test_discover_missing_dir(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        discover(tmp_path / "nope")


def test_run_trains_and_saves(tmp_path: Path) -> None:
    _write_folder(tmp_path)
    args = FolderArgs(data_dir=tmp_path, epochs=1, save=True)
    session = run(args, settings())
    assert session.labels == ("circle", "square")
    assert session.label_counts() == {"circle": 2, "square": 2}
    assert session.slot.ready
    assert session.status == "Model saved"


def test_parse_args() -> None:
    a = parse_args(["data", "--epochs", "3", "--no-save"])
    assert a.data_dir == Path("data") and a.epochs == 3 and a.save is False
    s = parse_serve_args(["--port", "9001"])
    assert s.port == 9001 and s.host == "0.0.0.0"
