from flask import abort, current_app

from bibletts.webui.models import Job
from bibletts.webui.service import ConversionService


def get_service() -> ConversionService:
    return current_app.extensions["conversion_service"]


def require_job(job_id: str) -> Job:
    job = get_service().get_job(job_id)
    if not job:
        abort(404)
    return job
