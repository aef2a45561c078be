from bibletts.webui.routes.api import api_bp
from bibletts.webui.routes.jobs import jobs_bp

__all__ = [
    "api_bp",
    "jobs_bp",
]
