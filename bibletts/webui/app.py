from __future__ import annotations

import atexit
import logging
import os
import time
from pathlib import Path
from typing import Any, Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from bibletts.utils import get_user_output_path, load_config

from .conversion_runner import run_conversion_job
from .service import QueueSettings, build_service


class _SuppressSuccessfulAccessFilter(logging.Filter):
    """Filter out successful (2xx) werkzeug access logs."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        # Werkzeug access lines end with the status code, e.g. "GET /api/health HTTP/1.1" 200 -
        return " 200 " not in message and " 201 " not in message and " 204 " not in message


_access_log_filter_attached = False


def create_app(config: Optional[dict[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    base_config: dict[str, Any] = {
        "OUTPUT_FOLDER": None,
        "QUEUE_STATE_PATH": None,
        "MAX_CONCURRENT_JOBS": None,
        "START_QUEUE": True,
        "JOB_RUNNER": None,
    }
    if config:
        base_config.update(config)
    app.config.update(base_config)

    output_folder = app.config["OUTPUT_FOLDER"] or get_user_output_path("web")
    app.config["OUTPUT_FOLDER"] = str(output_folder)

    settings = QueueSettings.from_environment(
        load_config(),
        output_root=Path(app.config["OUTPUT_FOLDER"]),
        state_path=app.config["QUEUE_STATE_PATH"],
    )
    service = build_service(
        runner=app.config.get("JOB_RUNNER") or run_conversion_job,
        settings=settings,
        max_concurrent=app.config["MAX_CONCURRENT_JOBS"],
        start=bool(app.config["START_QUEUE"]),
    )
    app.extensions["conversion_service"] = service
    app.extensions["bibletts_started_at"] = time.time()

    from bibletts.webui.routes import api_bp, jobs_bp

    app.register_blueprint(api_bp, url_prefix="/api")
    app.register_blueprint(jobs_bp, url_prefix="/api/jobs")

    @app.errorhandler(HTTPException)
    def _json_http_error(exc: HTTPException):
        return jsonify({"error": exc.description}), exc.code

    atexit.register(service.shutdown)

    global _access_log_filter_attached
    if not _access_log_filter_attached:
        logging.getLogger("werkzeug").addFilter(_SuppressSuccessfulAccessFilter())
        _access_log_filter_attached = True

    return app


def main() -> None:
    app = create_app()
    host = os.environ.get("BIBLETTS_HOST", "0.0.0.0")
    port = int(os.environ.get("BIBLETTS_PORT", "3005"))
    debug = os.environ.get("BIBLETTS_DEBUG", "false").lower() == "true"
    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":  # pragma: no cover
    main()
