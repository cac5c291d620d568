from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

from PIL import Image, UnidentifiedImageError

from sketch_learner.config import Settings
from sketch_learner.session import SketchSession

_IMAGE_SUFFIXES: Final[frozenset[str]] = frozenset({".png", ".jpg", ".jpeg"})


@dataclass(frozen=True)
class FolderArgs:
    data_dir: Path
    epochs: int | None
    save: bool


def parse_args(argv: list[str] | None = None) -> FolderArgs:
    ap = argparse.ArgumentParser(
        description="Train from a folder with one sub-directory of sketches per label"
    )
    ap.add_argument("data_dir", help="Root directory; sub-directory names become labels")
    ap.add_argument("--epochs", type=int, default=None, help="Override sketch.epochs")
    ap.add_argument("--no-save", action="store_true", help="Do not persist the trained model")
    a = ap.parse_args(argv)
    return FolderArgs(
        data_dir=Path(str(a.data_dir)),
        epochs=int(a.epochs) if a.epochs is not None else None,
        save=not bool(a.no_save),
    )


def discover(data_dir: Path) -> dict[str, list[Path]]:
    """Map each label directory to its image files, both in sorted order."""
    if not data_dir.is_dir():
        raise SystemExit(f"Data directory not found: {data_dir.as_posix()}")
    out: dict[str, list[Path]] = {}
    for sub in sorted(p for p in data_dir.iterdir() if p.is_dir()):
        files = sorted(p for p in sub.iterdir() if p.suffix.lower() in _IMAGE_SUFFIXES)
        if files:
            out[sub.name] = files
    if not out:
        raise SystemExit(f"No labelled images under {data_dir.as_posix()}")
    return out


def build_session(settings: Settings, folders: dict[str, list[Path]]) -> SketchSession:
    labels = tuple(folders)
    s = replace(settings, sketch=replace(settings.sketch, default_labels=labels))
    session = SketchSession(s)
    log = logging.getLogger("sketch_learner")
    for label, files in folders.items():
        for path in files:
            try:
                with Image.open(path) as img:
                    report = session.add_example(img.copy(), label)
            except (UnidentifiedImageError, OSError) as exc:
                log.warning("example_skipped path=%s error=%s", path.as_posix(), exc)
                continue
            if not report.ok:
                log.warning("example_skipped path=%s reason=%s", path.as_posix(), report.message)
    return session


def run(args: FolderArgs, settings: Settings) -> SketchSession:
    if args.epochs is not None:
        settings = replace(settings, sketch=replace(settings.sketch, epochs=args.epochs))
    session = build_session(settings, discover(args.data_dir))
    report = session.train()
    if not report.ok:
        raise SystemExit(report.message)
    if args.save:
        saved = session.save()
        if not saved.ok:
            raise SystemExit(saved.message)
    return session


def main() -> None:  # pragma: no cover - tiny glue
    from sketch_learner.logging import init_logging

    init_logging()
    run(parse_args(), Settings.load())


if __name__ == "__main__":
    main()
