from __future__ import annotations

import logging
import sys
import time
import traceback
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


_JOB_LOGGER = logging.getLogger("bibletts.jobs")
if not _JOB_LOGGER.handlers:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S"))
    _JOB_LOGGER.addHandler(handler)
    _JOB_LOGGER.propagate = False
_JOB_LOGGER.setLevel(logging.DEBUG)

_JOB_LEVEL_MAP: Dict[str, int] = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "success": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}

MAX_STORED_LOGS = 200


def _emit_job_log(job_id: str, level: str, message: str) -> None:
    normalized = (level or "info").lower()
    log_level = _JOB_LEVEL_MAP.get(normalized, logging.INFO)
    try:
        _JOB_LOGGER.log(log_level, "[job %s] %s", job_id, message)
    except Exception:
        # Logging failures should never disrupt job processing, but we should know about them.
        try:
            sys.stderr.write(f"Logging failed for job {job_id}: {message}\n")
            traceback.print_exc(file=sys.stderr)
        except Exception:
            pass


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class JobType(str, Enum):
    TTS = "tts"
    BIBLE = "bible"
    BIBLE_VIDEO = "bible_video"

    @classmethod
    def parse(cls, value: Any) -> "JobType":
        text = str(getattr(value, "value", value) or "").strip().lower().replace("-", "_")
        aliases = {"text": cls.TTS, "passage": cls.BIBLE, "video": cls.BIBLE_VIDEO}
        if text in aliases:
            return aliases[text]
        return cls(text)


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

_ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    # processing -> pending only happens when the store recovers a job after a restart.
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.PENDING}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class InvalidTransition(Exception):
    def __init__(self, current: JobStatus, attempted: JobStatus) -> None:
        super().__init__(f"Cannot move job from {current.value} to {attempted.value}")
        self.current = current
        self.attempted = attempted


def allowed_next_statuses(status: JobStatus) -> List[JobStatus]:
    """Return deterministically ordered allowed successors for a status."""
    return sorted(_ALLOWED_TRANSITIONS.get(status, frozenset()), key=lambda s: s.value)


def ensure_transition(current: JobStatus, attempted: JobStatus) -> None:
    if attempted not in _ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(current, attempted)


@dataclass
class JobLog:
    timestamp: float
    message: str
    level: str = "info"


@dataclass
class JobProgress:
    chunk: int = 0
    total: int = 0
    message: str = ""
    updated_at: Optional[float] = None

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(100.0, (self.chunk / self.total) * 100.0)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "chunk": self.chunk,
            "total": self.total,
            "message": self.message,
            "percentage": round(self.percentage, 1),
            "updated_at": self.updated_at,
        }


@dataclass
class JobResult:
    outputs: List[str] = field(default_factory=list)
    audio: Optional[str] = None
    video: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"outputs": list(self.outputs), "audio": self.audio, "video": self.video}

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> Optional["JobResult"]:
        if not payload:
            return None
        if not isinstance(payload, Mapping):
            raise ValueError(f"Job result must be an object, not {type(payload).__name__}")
        return cls(
            outputs=[str(item) for item in payload.get("outputs", []) or []],
            audio=payload.get("audio"),
            video=payload.get("video"),
        )


@dataclass
class JobError:
    message: str
    troubleshooting: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "troubleshooting": list(self.troubleshooting)}

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> Optional["JobError"]:
        if not payload:
            return None
        if not isinstance(payload, Mapping):
            raise ValueError(f"Job error must be an object, not {type(payload).__name__}")
        return cls(
            message=str(payload.get("message") or ""),
            troubleshooting=[str(item) for item in payload.get("troubleshooting", []) or []],
        )


# Fields a caller may never change once the job has been accepted.
IMMUTABLE_FIELDS = frozenset({"id", "job_type", "owner", "payload", "created_at", "sequence"})


@dataclass
class Job:
    id: str
    job_type: JobType
    owner: str
    payload: Dict[str, Any]
    created_at: float
    updated_at: float
    sequence: int = 0
    status: JobStatus = JobStatus.PENDING
    started_at: Optional[float] = None
    result: Optional[JobResult] = None
    error: Optional[JobError] = None
    recovery_count: int = 0
    interrupted_at: Optional[float] = None
    progress: JobProgress = field(default_factory=JobProgress, compare=False)
    logs: List[JobLog] = field(default_factory=list, compare=False)

    @classmethod
    def new(cls, job_type: Any, owner: str, payload: Mapping[str, Any]) -> "Job":
        now = time.time()
        return cls(
            id=uuid.uuid4().hex,
            job_type=JobType.parse(job_type),
            owner=str(owner),
            payload=dict(payload),
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def add_log(self, message: str, level: str = "info") -> None:
        entry = JobLog(timestamp=time.time(), message=message, level=level)
        self.logs.append(entry)
        if len(self.logs) > MAX_STORED_LOGS:
            del self.logs[: len(self.logs) - MAX_STORED_LOGS]
        _emit_job_log(self.id, level, message)

    def to_record(self) -> Dict[str, Any]:
        """Durable form written to the queue state file."""
        return {
            "id": self.id,
            "type": self.job_type.value,
            "owner": self.owner,
            "payload": dict(self.payload),
            "sequence": self.sequence,
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "result": self.result.as_dict() if self.result else None,
            "error": self.error.as_dict() if self.error else None,
            "recovery_count": self.recovery_count,
            "interrupted_at": self.interrupted_at,
            "logs": [log.__dict__ for log in self.logs],
        }

    @classmethod
    def from_record(cls, payload: Mapping[str, Any]) -> "Job":
        created_at = float(payload["created_at"])
        job = cls(
            id=str(payload["id"]),
            job_type=JobType.parse(payload["type"]),
            owner=str(payload.get("owner") or ""),
            payload=dict(payload.get("payload") or {}),
            created_at=created_at,
            updated_at=float(payload.get("updated_at") or created_at),
            sequence=int(payload.get("sequence", 0) or 0),
            status=JobStatus(payload.get("status", JobStatus.PENDING.value)),
            started_at=payload.get("started_at"),
            result=JobResult.from_dict(payload.get("result")),
            error=JobError.from_dict(payload.get("error")),
            recovery_count=int(payload.get("recovery_count", 0) or 0),
            interrupted_at=payload.get("interrupted_at"),
        )
        job.logs = [
            JobLog(
                timestamp=float(entry.get("timestamp", created_at)),
                message=str(entry.get("message", "")),
                level=str(entry.get("level", "info")),
            )
            for entry in payload.get("logs", []) or []
            if isinstance(entry, Mapping)
        ]
        return job

    def as_dict(self, queue_position: Optional[int] = None) -> Dict[str, Any]:
        """API form, including the ephemeral progress snapshot."""
        data = self.to_record()
        data["progress"] = self.progress.as_dict()
        data["queue_position"] = queue_position
        return data
