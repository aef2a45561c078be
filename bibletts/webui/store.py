from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .models import IMMUTABLE_FIELDS, Job, JobStatus, ensure_transition


STATE_VERSION = 1

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when the queue state could not be written to disk.

    The in-memory change that triggered the write has already been applied and
    stays authoritative until the next successful write.
    """

    def __init__(self, message: str, job_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.job_id = job_id


class JobStore:
    """Job records kept in memory and mirrored to a JSON snapshot file.

    Every mutating call rewrites the whole snapshot (write-through); there is no
    append log. The snapshot is loaded when the store is constructed.
    """

    def __init__(self, state_path: Path) -> None:
        self._state_path = Path(state_path)
        self._jobs: Dict[str, Job] = {}
        self._next_sequence = 1
        self._lock = threading.RLock()
        self.load()

    @property
    def state_path(self) -> Path:
        return self._state_path

    # Queries ------------------------------------------------------------
    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self) -> List[Job]:
        with self._lock:
            return sorted(
                self._jobs.values(),
                key=lambda job: (job.created_at, job.sequence),
                reverse=True,
            )

    def pending_jobs(self) -> List[Job]:
        with self._lock:
            pending = [job for job in self._jobs.values() if job.status == JobStatus.PENDING]
        return sorted(pending, key=lambda job: job.sequence)

    def jobs_with_status(self, *statuses: JobStatus) -> List[Job]:
        wanted = set(statuses)
        with self._lock:
            return [job for job in self._jobs.values() if job.status in wanted]

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    # Mutations ----------------------------------------------------------
    def create_job(self, job_type: Any, owner: str, payload: Mapping[str, Any]) -> Job:
        job = Job.new(job_type, owner, payload)
        self.add_job(job)
        return job

    def add_job(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            job.sequence = self._next_sequence
            self._next_sequence += 1
            self._jobs[job.id] = job
            self._save_locked(job.id)
        return job

    def update_job(self, job_id: str, **changes: Any) -> Optional[Job]:
        """Merge ``changes`` into the stored job and persist.

        Returns ``None`` when the job is unknown. Status changes are checked
        against the lifecycle rules before anything is applied.
        """
        forbidden = IMMUTABLE_FIELDS.intersection(changes)
        if forbidden:
            raise ValueError(f"Immutable job fields cannot be updated: {', '.join(sorted(forbidden))}")

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            new_status = changes.get("status")
            if new_status is not None:
                new_status = JobStatus(new_status)
                changes["status"] = new_status
                if new_status != job.status:
                    ensure_transition(job.status, new_status)
            unknown = [key for key in changes if not hasattr(job, key)]
            if unknown:
                raise ValueError(f"Unknown job field: {', '.join(sorted(unknown))}")
            # Status goes last so readers polling it see the rest of the update.
            for key, value in sorted(changes.items(), key=lambda item: item[0] == "status"):
                setattr(job, key, value)
            job.updated_at = max(time.time(), job.updated_at)
            self._save_locked(job_id)
            return job

    def delete_job(self, job_id: str) -> bool:
        with self._lock:
            if self._jobs.pop(job_id, None) is None:
                return False
            self._save_locked(job_id)
            return True

    def delete_jobs(self, job_ids: List[str]) -> int:
        with self._lock:
            removed = [job_id for job_id in job_ids if self._jobs.pop(job_id, None) is not None]
            if removed:
                self._save_locked()
            return len(removed)

    # Persistence --------------------------------------------------------
    def save(self) -> None:
        with self._lock:
            self._save_locked()

    def _save_locked(self, job_id: Optional[str] = None) -> None:
        snapshot = {
            "version": STATE_VERSION,
            "jobs": [job.to_record() for job in self._jobs.values()],
        }
        tmp_path = self._state_path.with_suffix(".tmp")
        try:
            self._state_path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(snapshot, handle, indent=2)
            os.replace(tmp_path, self._state_path)
        except (OSError, TypeError, ValueError) as exc:
            logger.exception("Failed to write queue state to %s", self._state_path)
            raise PersistenceError(f"Could not save job queue state: {exc}", job_id=job_id) from exc

    def load(self) -> None:
        loaded = self._read_snapshot()
        recovered: List[Job] = []
        now = time.time()
        for job in loaded.values():
            if job.status == JobStatus.PROCESSING:
                ensure_transition(job.status, JobStatus.PENDING)
                job.status = JobStatus.PENDING
                job.started_at = None
                job.recovery_count += 1
                job.interrupted_at = now
                job.updated_at = now
                job.add_log("Job restored after restart: resetting to pending queue.", level="warning")
                recovered.append(job)

        with self._lock:
            self._jobs = loaded
            self._next_sequence = max((job.sequence for job in loaded.values()), default=0) + 1
            if recovered:
                try:
                    self._save_locked()
                except PersistenceError:
                    # Recovered state is still served from memory; the next mutation retries the write.
                    pass

        if loaded:
            logger.info(
                "Loaded %d job(s) from %s, %d reset to pending",
                len(loaded),
                self._state_path,
                len(recovered),
            )

    def _read_snapshot(self) -> Dict[str, Job]:
        if not self._state_path.exists():
            return {}
        try:
            with self._state_path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, ValueError) as exc:
            logger.warning("Queue state at %s is unreadable, starting empty: %s", self._state_path, exc)
            return {}

        if not isinstance(payload, dict):
            logger.warning("Queue state at %s has an unexpected shape, starting empty", self._state_path)
            return {}
        try:
            version = int(payload.get("version", 0) or 0)
        except (TypeError, ValueError):
            version = 0
        if version != STATE_VERSION:
            logger.warning("Queue state version %s is not supported, starting empty", version)
            return {}

        jobs: Dict[str, Job] = {}
        entries = payload.get("jobs", [])
        if not isinstance(entries, list):
            return {}
        next_sequence = 1
        for entry in entries:
            try:
                job = Job.from_record(entry)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed job entry in queue state: %s", exc)
                continue
            if job.sequence <= 0:
                job.sequence = next_sequence
            next_sequence = max(next_sequence, job.sequence) + 1
            jobs[job.id] = job
        return jobs

