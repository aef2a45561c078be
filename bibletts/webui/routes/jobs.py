import json
import time
from typing import Iterator

from flask import Blueprint, Response, jsonify, request, stream_with_context
from flask.typing import ResponseReturnValue

from bibletts.webui.routes.utils.service import get_service, require_job

jobs_bp = Blueprint("jobs", __name__)

LOG_POLL_SECONDS = 0.5


@jobs_bp.get("/<job_id>/logs")
def job_logs(job_id: str) -> ResponseReturnValue:
    job = require_job(job_id)
    level = (request.args.get("level") or "").strip().lower()
    logs = [log.__dict__ for log in list(job.logs) if not level or log.level == level]
    return jsonify({"id": job.id, "status": job.status.value, "logs": logs})


@jobs_bp.get("/<job_id>/logs/stream")
def stream_logs(job_id: str) -> ResponseReturnValue:
    service = get_service()
    job = require_job(job_id)

    def generate() -> Iterator[str]:
        last_index = 0
        while True:
            current_logs = list(job.logs)
            for log in current_logs[last_index:]:
                yield f"data: {json.dumps(log.__dict__)}\n\n"
            last_index = len(current_logs)

            # A deleted job never reaches a terminal status.
            if job.is_terminal or service.get_job(job_id) is not job:
                break
            time.sleep(LOG_POLL_SECONDS)

    return Response(stream_with_context(generate()), mimetype="text/event-stream")
