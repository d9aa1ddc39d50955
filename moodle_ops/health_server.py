from __future__ import annotations

import argparse
import sys
from typing import Callable

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from . import __version__
from .cli_shared import UsageError
from .health import HealthProbe, build_health_probe, collect_health
from .settings import Settings, load_config_file, settings_from_env

NO_CACHE = "no-cache, no-store, must-revalidate"


def create_app(settings: Settings, *, probe_factory: Callable[[Settings], HealthProbe] = build_health_probe) -> FastAPI:
    app = FastAPI(title="moodle-ops health", version=__version__, docs_url=None, redoc_url=None)

    def _health() -> JSONResponse:
        report = collect_health(probe_factory(settings))
        return JSONResponse(
            content=report.as_dict(),
            status_code=report.http_status,
            headers={"Cache-Control": NO_CACHE},
        )

    # Plain def handlers run in the threadpool; the checks shell out.
    app.add_api_route("/health-check", _health, methods=["GET"])
    app.add_api_route("/healthz", _health, methods=["GET"])
    return app


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="moodle-ops-health", description="Serve the Moodle health-check JSON.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8081)
    parser.add_argument("--config", "-c", default=None)
    args = parser.parse_args(list(sys.argv[1:] if argv is None else argv))
    try:
        load_config_file(args.config)
    except UsageError as e:
        sys.stderr.write(f"error: {e}\n")
        return 2
    app = create_app(settings_from_env())
    uvicorn.run(app, host=args.host, port=args.port, log_level="info")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
