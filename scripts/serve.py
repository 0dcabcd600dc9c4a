from __future__ import annotations

import argparse
from dataclasses import dataclass

import uvicorn

from tumor_ai.api.app import create_app
from tumor_ai.config import Settings


@dataclass(frozen=True)
class ServeArgs:
    host: str
    port: int | None
    reload_interval_seconds: float


def parse_args(argv: list[str] | None = None) -> ServeArgs:
    ap = argparse.ArgumentParser(description="Run the tumor classification HTTP service")
    ap.add_argument("--host", default="0.0.0.0", help="Bind address")
    ap.add_argument("--port", type=int, default=None, help="Port (defaults to [app].port)")
    ap.add_argument(
        "--reload-interval",
        type=float,
        default=0.0,
        help="Seconds between model file change checks; 0 disables",
    )
    a = ap.parse_args(argv)
    return ServeArgs(
        host=str(a.host),
        port=int(a.port) if a.port is not None else None,
        reload_interval_seconds=float(a.reload_interval),
    )


def main() -> None:  # pragma: no cover - process entrypoint
    args = parse_args()
    settings = Settings.load()
    app = create_app(settings, reload_interval_seconds=args.reload_interval_seconds)
    uvicorn.run(app, host=args.host, port=args.port or settings.app.port, log_config=None)


if __name__ == "__main__":
    main()
