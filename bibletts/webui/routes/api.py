import json
import logging
import time
from typing import Any, Dict, Iterator, Mapping, Optional

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context
from flask.typing import ResponseReturnValue

from bibletts.utils import get_version
from bibletts.webui.models import Job, JobStatus
from bibletts.webui.progress import ProgressEvent
from bibletts.webui.routes.utils.service import get_service, require_job
from bibletts.webui.service import JobValidationError
from bibletts.webui.store import PersistenceError

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__)

SSE_HEARTBEAT_SECONDS = 15.0


def _submit(job_type: Any, owner: Any, payload: Any) -> ResponseReturnValue:
    service = get_service()
    try:
        job = service.submit(job_type, owner, payload)
    except JobValidationError as exc:
        return jsonify({"error": str(exc)}), 400
    except PersistenceError as exc:
        return jsonify({"error": str(exc), "id": exc.job_id}), 500
    position = service.queue_position(job.id)
    return jsonify({"id": job.id, "status": job.status.value, "queue_position": position}), 201


def _persisted(action, job_id: str) -> ResponseReturnValue:
    try:
        success = action(job_id)
    except PersistenceError as exc:
        return jsonify({"error": str(exc)}), 500
    return jsonify({"success": success})


def _terminal_event(job: Job) -> Optional[ProgressEvent]:
    if job.status == JobStatus.COMPLETED:
        return ProgressEvent.completed(job.result.outputs if job.result else [])
    if job.status == JobStatus.FAILED:
        error = job.error
        return ProgressEvent.failed(error.message if error else "Job failed", error.troubleshooting if error else [])
    if job.status == JobStatus.CANCELLED:
        return ProgressEvent.cancelled()
    return None


def _sse(event: ProgressEvent) -> str:
    return f"data: {json.dumps(event.as_dict())}\n\n"


def _json_body() -> Mapping[str, Any]:
    body = request.get_json(force=True, silent=True)
    return body if isinstance(body, Mapping) else {}


# --- Jobs ---

@api_bp.post("/jobs")
def api_submit_job() -> ResponseReturnValue:
    body = _json_body()
    owner = body.get("owner") or body.get("user")
    return _submit(body.get("type"), owner, body.get("payload"))


@api_bp.post("/jobs/<job_type>")
def api_submit_typed_job(job_type: str) -> ResponseReturnValue:
    body = _json_body()
    owner = body.get("user") or body.get("owner")
    payload: Dict[str, Any] = {key: value for key, value in body.items() if key not in {"user", "owner"}}
    return _submit(job_type, owner, payload)


@api_bp.get("/jobs")
def api_list_jobs() -> ResponseReturnValue:
    owner = request.args.get("owner") or request.args.get("user") or None
    return jsonify(get_service().queue_snapshot(owner))


@api_bp.get("/jobs/<job_id>")
def api_get_job(job_id: str) -> ResponseReturnValue:
    job = require_job(job_id)
    return jsonify(job.as_dict(queue_position=get_service().queue_position(job.id)))


@api_bp.post("/jobs/<job_id>/cancel")
def api_cancel_job(job_id: str) -> ResponseReturnValue:
    return _persisted(get_service().cancel, job_id)


@api_bp.delete("/jobs/<job_id>")
def api_delete_job(job_id: str) -> ResponseReturnValue:
    return _persisted(get_service().delete, job_id)


# --- Progress ---

@api_bp.get("/progress/<job_id>")
def api_progress_stream(job_id: str) -> ResponseReturnValue:
    service = get_service()
    require_job(job_id)
    subscription = service.subscribe(job_id)
    job = service.get_job(job_id)
    final = _terminal_event(job) if job else ProgressEvent.cancelled("Job deleted")

    def generate() -> Iterator[str]:
        try:
            if final is not None:
                yield _sse(final)
                return
            yield ": connected\n\n"
            for event in subscription.listen(heartbeat=SSE_HEARTBEAT_SECONDS):
                if event is None:
                    yield ": keep-alive\n\n"
                    continue
                yield _sse(event)
        finally:
            subscription.close()

    response = Response(stream_with_context(generate()), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


# --- Queue ---

@api_bp.get("/queue/stats")
def api_queue_stats() -> ResponseReturnValue:
    return jsonify(get_service().stats())


@api_bp.post("/queue/cleanup")
def api_queue_cleanup() -> ResponseReturnValue:
    try:
        removed = get_service().cleanup()
    except PersistenceError as exc:
        return jsonify({"error": str(exc)}), 500
    return jsonify({"removed": removed})


@api_bp.get("/health")
def api_health() -> ResponseReturnValue:
    started_at = current_app.extensions.get("bibletts_started_at", time.time())
    return jsonify(
        {
            "ok": True,
            "uptime": round(time.time() - started_at, 3),
            "version": get_version(),
            "running": get_service().running_count,
        }
    )
