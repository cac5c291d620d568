from __future__ import annotations

from dataclasses import replace

from PIL import Image, ImageDraw

from sketch_learner.config import (
    AppConfig,
    SecurityConfig,
    Settings,
    SketchConfig,
    StorageConfig,
)


def circle_image(size: int = 200, offset: int = 0, mode: str = "RGB") -> Image.Image:
    img = Image.new(mode, (size, size), "white")
    d = ImageDraw.Draw(img)
    m = size // 5 + offset
    d.ellipse((m, m, size - m, size - m), outline="black", width=max(2, size // 12))
    return img


def square_image(size: int = 200, offset: int = 0, mode: str = "RGB") -> Image.Image:
    img = Image.new(mode, (size, size), "white")
    d = ImageDraw.Draw(img)
    m = size // 5 + offset
    d.rectangle((m, m, size - m, size - m), outline="black", width=max(2, size // 12))
    return img


def settings(**sketch_overrides: object) -> Settings:
    sk = replace(SketchConfig(seed=7), **sketch_overrides)
    return Settings(
        app=AppConfig(threads=1),
        sketch=sk,
        storage=StorageConfig(backend="memory"),
        security=SecurityConfig(),
    )
