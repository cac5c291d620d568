from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/sketch_learner.toml")
_STORAGE_BACKENDS: Final[tuple[str, ...]] = ("memory", "file", "redis")


@dataclass(frozen=True)
class AppConfig:
    threads: int = 0
    port: int = 8082


@dataclass(frozen=True)
class SketchConfig:
    epochs: int = 10
    batch_size: int = 16
    lr: float = 0.001
    device: str = "cpu"
    seed: int | None = None
    default_labels: tuple[str, ...] = ("circle", "square")
    max_image_mb: int = 2
    max_image_side_px: int = 2048
    predict_timeout_seconds: int = 5


@dataclass(frozen=True)
class StorageConfig:
    backend: str = "file"
    root: Path = Path("./data/sketch_learner")
    redis_url: str = "redis://localhost:6379/0"
    key: str = "sketch-learner-model"


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the check
    api_key: str = ""


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    sketch: SketchConfig
    storage: StorageConfig
    security: SecurityConfig

    @staticmethod
    def default() -> Settings:
        return Settings(
            app=AppConfig(),
            sketch=SketchConfig(),
            storage=StorageConfig(),
            security=SecurityConfig(),
        )

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("SKETCH_LEARNER_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Load env first, then override from TOML if present.
        base = cls(
            app=_load_app_from_env(),
            sketch=_load_sketch_from_env(),
            storage=_load_storage_from_env(),
            security=_load_security_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            sketch=_merge_sketch(base.sketch, _toml_table(raw, "sketch")),
            storage=_merge_storage(base.storage, _toml_table(raw, "storage")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
        )


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    th = os.getenv("APP__THREADS")
    pt = os.getenv("APP__PORT")
    if th is not None and th.isdigit():
        a = replace(a, threads=int(th))
    if pt is not None and pt.isdigit():
        a = replace(a, port=_check_port(int(pt), "APP__PORT"))
    return a


def _load_sketch_from_env() -> SketchConfig:
    d = SketchConfig()
    ep = os.getenv("SKETCH__EPOCHS")
    bs = os.getenv("SKETCH__BATCH_SIZE")
    lr = os.getenv("SKETCH__LR")
    dev = os.getenv("SKETCH__DEVICE")
    seed = os.getenv("SKETCH__SEED")
    labels = os.getenv("SKETCH__DEFAULT_LABELS")
    mb = os.getenv("SKETCH__MAX_IMAGE_MB")
    mx = os.getenv("SKETCH__MAX_IMAGE_SIDE_PX")
    to = os.getenv("SKETCH__PREDICT_TIMEOUT_SECONDS")
    if ep is not None:
        d = replace(d, epochs=_positive_int(ep, "SKETCH__EPOCHS"))
    if bs is not None:
        d = replace(d, batch_size=_positive_int(bs, "SKETCH__BATCH_SIZE"))
    if lr is not None:
        d = replace(d, lr=float(lr))
    if dev:
        d = replace(d, device=dev)
    if seed is not None and seed.strip() != "":
        d = replace(d, seed=int(seed))
    if labels:
        d = replace(d, default_labels=_labels_tuple(labels.split(",")))
    if mb is not None:
        d = replace(d, max_image_mb=int(mb))
    if mx is not None:
        d = replace(d, max_image_side_px=int(mx))
    if to is not None:
        d = replace(d, predict_timeout_seconds=int(to))
    return d


def _load_storage_from_env() -> StorageConfig:
    s = StorageConfig()
    backend = os.getenv("STORAGE__BACKEND")
    root = os.getenv("STORAGE__ROOT")
    url = os.getenv("STORAGE__REDIS_URL")
    key = os.getenv("STORAGE__KEY")
    if backend:
        s = replace(s, backend=_check_backend(backend))
    if root:
        s = replace(s, root=Path(root))
    if url:
        s = replace(s, redis_url=url)
    if key:
        s = replace(s, key=key)
    return s


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "threads" in data:
        out = replace(out, threads=int(str(data["threads"])))
    if "port" in data:
        out = replace(out, port=_check_port(int(str(data["port"])), "port"))
    return out


def _merge_sketch(base: SketchConfig, data: dict[str, object]) -> SketchConfig:
    out = base
    if "epochs" in data:
        out = replace(out, epochs=_positive_int(str(data["epochs"]), "epochs"))
    if "batch_size" in data:
        out = replace(out, batch_size=_positive_int(str(data["batch_size"]), "batch_size"))
    if "lr" in data:
        out = replace(out, lr=float(str(data["lr"])))
    if "device" in data:
        out = replace(out, device=str(data["device"]))
    if "seed" in data:
        out = replace(out, seed=int(str(data["seed"])))
    if "default_labels" in data:
        raw = data["default_labels"]
        if not isinstance(raw, list):
            raise RuntimeError("default_labels must be a list of strings")
        out = replace(out, default_labels=_labels_tuple([str(x) for x in raw]))
    if "max_image_mb" in data:
        out = replace(out, max_image_mb=int(str(data["max_image_mb"])))
    if "max_image_side_px" in data:
        out = replace(out, max_image_side_px=int(str(data["max_image_side_px"])))
    if "predict_timeout_seconds" in data:
        out = replace(out, predict_timeout_seconds=int(str(data["predict_timeout_seconds"])))
    return out


def _merge_storage(base: StorageConfig, data: dict[str, object]) -> StorageConfig:
    out = base
    if "backend" in data:
        out = replace(out, backend=_check_backend(str(data["backend"])))
    if "root" in data:
        out = replace(out, root=Path(str(data["root"])))
    if "redis_url" in data:
        out = replace(out, redis_url=str(data["redis_url"]))
    if "key" in data:
        out = replace(out, key=str(data["key"]))
    return out


def _merge_security(base: SecurityConfig, data: dict[str, object]) -> SecurityConfig:
    out = base
    api_key_val = data.get("api_key")
    if isinstance(api_key_val, str):
        out = replace(out, api_key=api_key_val)
    enabled = data.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out = replace(out, api_key="")
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _check_port(port: int, name: str) -> int:
    if not (1 <= port <= 65535):
        raise RuntimeError(f"{name} out of range")
    return port


def _positive_int(raw: str, name: str) -> int:
    val = int(raw)
    if val < 1:
        raise RuntimeError(f"{name} must be >= 1")
    return val


def _check_backend(raw: str) -> str:
    backend = raw.strip().lower()
    if backend not in _STORAGE_BACKENDS:
        raise RuntimeError(f"unsupported storage backend: {raw}")
    return backend


def _labels_tuple(items: list[str]) -> tuple[str, ...]:
    labels = tuple(s.strip() for s in items if s.strip())
    if not labels:
        raise RuntimeError("default_labels must not be empty")
    if len(set(labels)) != len(labels):
        raise RuntimeError("default_labels must be unique")
    return labels


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.sketch.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.sketch.max_image_side_px),
        )
