from __future__ import annotations

import argparse
from dataclasses import dataclass


@dataclass(frozen=True)
class ServeArgs:
    host: str
    port: int | None


def parse_args(argv: list[str] | None = None) -> ServeArgs:
    ap = argparse.ArgumentParser(description="Serve the sketch learner HTTP API")
    ap.add_argument("--host", default="0.0.0.0", help="Bind address")
    ap.add_argument("--port", type=int, default=None, help="Override app.port from config")
    a = ap.parse_args(argv)
    return ServeArgs(host=str(a.host), port=int(a.port) if a.port is not None else None)


def main() -> None:  # pragma: no cover - process entrypoint
    import uvicorn

    from sketch_learner.api.app import create_app
    from sketch_learner.config import Settings

    args = parse_args()
    settings = Settings.load()
    app = create_app(settings)
    uvicorn.run(app, host=args.host, port=args.port or settings.app.port, log_config=None)


if __name__ == "__main__":
    main()
