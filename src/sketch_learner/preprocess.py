from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Protocol

import torch
import torch.nn.functional as F  # noqa: N812
from PIL import Image, ImageOps
from torch import Tensor

from .errors import AppError, ErrorCode, app_error

IMAGE_SIZE: Final[int] = 28
TENSOR_SHAPE: Final[tuple[int, int, int, int]] = (1, IMAGE_SIZE, IMAGE_SIZE, 1)
_PREPROCESS_SIGNATURE: Final[str] = "v1/grayscale+scale255+bilinear28+nhwc"
_RASTER_CHANNELS: Final[dict[str, int]] = {"L": 1, "RGB": 3, "RGBA": 4}


class CanvasSource(Protocol):
    """Pull-style drawing surface: returns the current canvas or None."""

    def capture(self) -> Image.Image | None: ...


@dataclass(frozen=True)
class RasterSnapshot:
    width: int
    height: int
    mode: str
    pixels: bytes


def image_from_raster(snap: RasterSnapshot | None) -> Image.Image:
    if snap is None or snap.width <= 0 or snap.height <= 0:
        raise app_error(ErrorCode.source_not_ready, "Canvas not ready")
    channels = _RASTER_CHANNELS.get(snap.mode)
    if channels is None:
        raise app_error(ErrorCode.source_not_ready, f"unsupported raster mode {snap.mode}")
    if len(snap.pixels) != snap.width * snap.height * channels:
        raise app_error(ErrorCode.source_not_ready, "raster buffer does not match dimensions")
    return Image.frombytes(snap.mode, (snap.width, snap.height), snap.pixels)


def capture_tensor(source: CanvasSource) -> Tensor:
    return to_tensor(source.capture())


def to_tensor(img: Image.Image | None) -> Tensor:
    """Convert a raster image into a (1, 28, 28, 1) float tensor in [0, 1].

    Grayscale, divide by 255, bilinear resize to 28x28, then add the batch
    dimension. Channel stays last.
    """
    if img is None:
        raise app_error(ErrorCode.source_not_ready, "Canvas not ready")
    width, height = img.size
    if width <= 0 or height <= 0:
        raise app_error(ErrorCode.source_not_ready, "Canvas is empty")
    try:
        gray = _load_to_grayscale(img)
        with torch.no_grad():
            raw = torch.frombuffer(bytearray(gray.tobytes()), dtype=torch.uint8)
            scaled = raw.to(dtype=torch.float32).div(255.0).reshape(1, 1, height, width)
            resized = F.interpolate(
                scaled, size=(IMAGE_SIZE, IMAGE_SIZE), mode="bilinear", align_corners=False
            )
            out = resized.clamp(0.0, 1.0).permute(0, 2, 3, 1).contiguous()
        del raw, scaled, resized
        return out
    except AppError:
        raise
    except (ValueError, OSError, RuntimeError, TypeError) as exc:
        raise app_error(ErrorCode.preprocessing_failed, str(exc)) from None


def preprocess_signature() -> str:
    return _PREPROCESS_SIGNATURE


def _load_to_grayscale(img: Image.Image) -> Image.Image:
    img2 = img
    if img2.mode in ("RGBA", "LA", "PA") or (img2.mode == "P" and "transparency" in img2.info):
        img2 = img2.convert("RGBA")
        bg = Image.new("RGBA", img2.size, (255, 255, 255, 255))
        img2 = Image.alpha_composite(bg, img2).convert("RGB")
    if img2.mode == "P":
        img2 = img2.convert("RGB")
    if img2.mode != "L":
        img2 = ImageOps.grayscale(img2)
    return img2
