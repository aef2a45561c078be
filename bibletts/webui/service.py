from __future__ import annotations

import os
import threading
import time
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from bibletts.utils import coerce_float, coerce_int, get_user_output_path, get_user_settings_dir, load_config

from .models import (
    _JOB_LOGGER,
    Job,
    JobError,
    JobProgress,
    JobResult,
    JobStatus,
    JobType,
)
from .progress import ProgressEvent, ProgressHub, Subscription
from .store import JobStore, PersistenceError


DEFAULT_MAX_CONCURRENT = 3
DEFAULT_RETENTION_HOURS = 24.0
DEFAULT_CLEANUP_INTERVAL = 3600.0

AUDIO_FORMATS = ("mp3", "wav", "ogg", "m4a")
VIDEO_RESOLUTIONS = ("720p", "1080p", "4k")
VIDEO_FORMATS = ("mp4", "webm", "mov")


class JobValidationError(ValueError):
    """Submission rejected before it reaches the queue."""


class JobFailure(Exception):
    """Raised by a runner to fail a job with user-facing troubleshooting hints."""

    def __init__(self, message: str, troubleshooting: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.troubleshooting = list(troubleshooting or [])


class JobCancelled(Exception):
    """Raised by a runner when it notices the cancel signal at a checkpoint."""


@dataclass
class JobOutcome:
    result: Optional[JobResult] = None
    error: Optional[JobError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, result: Optional[JobResult] = None) -> "JobOutcome":
        return cls(result=result or JobResult())

    @classmethod
    def failure(cls, message: str, troubleshooting: Optional[List[str]] = None) -> "JobOutcome":
        return cls(error=JobError(message=message or "Job failed", troubleshooting=list(troubleshooting or [])))


@dataclass
class QueueSettings:
    state_path: Path
    output_root: Path
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    retention_hours: float = DEFAULT_RETENTION_HOURS
    cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL
    job_timeout: Optional[float] = None
    retention_statuses: Tuple[JobStatus, ...] = (JobStatus.COMPLETED,)

    def __post_init__(self) -> None:
        self.state_path = Path(self.state_path)
        self.output_root = Path(self.output_root)
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if self.job_timeout is not None and self.job_timeout <= 0:
            self.job_timeout = None

    @property
    def retention_seconds(self) -> float:
        return self.retention_hours * 3600.0

    @classmethod
    def from_environment(
        cls,
        config: Optional[Mapping[str, Any]] = None,
        *,
        output_root: Optional[Path] = None,
        state_path: Optional[Path] = None,
    ) -> "QueueSettings":
        config = config if config is not None else load_config()
        env = os.environ
        timeout = coerce_float(env.get("BIBLETTS_JOB_TIMEOUT"), coerce_float(config.get("job_timeout_seconds"), 0.0))
        return cls(
            state_path=Path(state_path) if state_path else determine_state_path(),
            output_root=Path(output_root) if output_root else Path(get_user_output_path("jobs")),
            max_concurrent=max(
                1,
                coerce_int(
                    env.get("BIBLETTS_MAX_CONCURRENT"),
                    coerce_int(config.get("max_concurrent_jobs"), DEFAULT_MAX_CONCURRENT),
                ),
            ),
            retention_hours=coerce_float(
                env.get("BIBLETTS_RETENTION_HOURS"),
                coerce_float(config.get("retention_hours"), DEFAULT_RETENTION_HOURS),
            ),
            cleanup_interval=coerce_float(
                env.get("BIBLETTS_CLEANUP_INTERVAL"),
                coerce_float(config.get("cleanup_interval_seconds"), DEFAULT_CLEANUP_INTERVAL),
            ),
            job_timeout=timeout or None,
        )


def determine_state_path() -> Path:
    override_file = os.environ.get("BIBLETTS_QUEUE_STATE_PATH")
    if override_file:
        target_path = Path(override_file).expanduser()
        target_path.parent.mkdir(parents=True, exist_ok=True)
        return target_path

    override_dir = os.environ.get("BIBLETTS_QUEUE_STATE_DIR")
    if override_dir:
        base_dir = Path(override_dir).expanduser()
    else:
        base_dir = Path(get_user_settings_dir()) / "queue"
    base_dir.mkdir(parents=True, exist_ok=True)
    return base_dir / "job_queue.json"


def _pick(payload: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


def validate_submission(job_type: Any, owner: Any, payload: Any) -> Tuple[JobType, str, Dict[str, Any]]:
    """Check and normalize a submission; raise ``JobValidationError`` when it is unusable."""
    try:
        parsed_type = JobType.parse(job_type)
    except ValueError:
        raise JobValidationError(f"Unknown job type: {job_type!r}") from None

    owner_text = str(owner or "").strip()
    if not owner_text:
        raise JobValidationError("Job owner is required")

    if not isinstance(payload, Mapping):
        raise JobValidationError("Job payload must be an object")

    normalized: Dict[str, Any] = {}
    text = _pick(payload, "text")
    if text is not None and not isinstance(text, str):
        raise JobValidationError("Text must be a string")

    if parsed_type is JobType.TTS:
        if not text or not text.strip():
            raise JobValidationError("Text is required for text-to-speech jobs")
        normalized["text"] = text
    else:
        book = str(_pick(payload, "book", default="") or "").strip()
        if not book:
            raise JobValidationError("Book is required for Bible jobs")
        chapter = coerce_int(_pick(payload, "chapter"), 0)
        if chapter < 1:
            raise JobValidationError("Chapter must be a positive number")
        normalized.update(
            {
                "translation": str(_pick(payload, "translation", default="web") or "web"),
                "book": book,
                "chapter": chapter,
                "verse_ranges": str(_pick(payload, "verse_ranges", "verseRanges", default="") or ""),
                "chapters": str(_pick(payload, "chapters", default="") or ""),
                "scope": str(_pick(payload, "scope", "type", default="chapter") or "chapter"),
                "exclude_numbers": bool(_pick(payload, "exclude_numbers", "excludeNumbers", default=True)),
                "exclude_footnotes": bool(_pick(payload, "exclude_footnotes", "excludeFootnotes", default=True)),
            }
        )
        if text:
            normalized["text"] = text

    audio_format = str(_pick(payload, "format", "audio_format", default="mp3")).strip().lower()
    if audio_format not in AUDIO_FORMATS:
        raise JobValidationError(f"Unsupported audio format: {audio_format}")
    normalized["format"] = audio_format

    sentences_per_chunk = coerce_int(_pick(payload, "sentences_per_chunk", "sentencesPerChunk"), 3)
    if not 1 <= sentences_per_chunk <= 50:
        raise JobValidationError("Sentences per chunk must be between 1 and 50")
    normalized["sentences_per_chunk"] = sentences_per_chunk
    normalized["voice_model_id"] = str(_pick(payload, "voice_model_id", "voiceModelId", default="default") or "default")

    if parsed_type is JobType.BIBLE_VIDEO:
        video = _pick(payload, "video", "videoSettings", default={}) or {}
        if not isinstance(video, Mapping):
            raise JobValidationError("Video settings must be an object")
        resolution = str(video.get("resolution") or "1080p").lower()
        if resolution not in VIDEO_RESOLUTIONS:
            raise JobValidationError(f"Unsupported video resolution: {resolution}")
        output_format = str(video.get("output_format") or video.get("outputFormat") or "mp4").lower()
        if output_format not in VIDEO_FORMATS:
            raise JobValidationError(f"Unsupported video format: {output_format}")
        normalized["video"] = {
            "background_type": str(video.get("background_type") or video.get("backgroundType") or "static"),
            "background_file": video.get("background_file") or video.get("backgroundFile"),
            "resolution": resolution,
            "output_format": output_format,
        }

    return parsed_type, owner_text, normalized


@dataclass
class ActiveJob:
    job_id: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None
    timer: Optional[threading.Timer] = None


class JobContext:
    """What a runner gets to talk back to the queue while it works."""

    def __init__(self, service: "ConversionService", job: Job, cancel_event: threading.Event, output_dir: Path) -> None:
        self._service = service
        self.job = job
        self._cancel_event = cancel_event
        self._output_dir = output_dir

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def payload(self) -> Dict[str, Any]:
        return self.job.payload

    @property
    def output_dir(self) -> Path:
        self._output_dir.mkdir(parents=True, exist_ok=True)
        return self._output_dir

    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise JobCancelled(f"Job {self.job.id} was cancelled")

    def report_progress(self, chunk: int, total: int, message: str = "") -> None:
        self._service._record_progress(self.job.id, chunk, total, message)

    def log(self, message: str, level: str = "info") -> None:
        self.job.add_log(message, level=level)


Runner = Callable[[Job, JobContext], Optional[JobResult]]


class ConversionService:
    def __init__(
        self,
        store: JobStore,
        runner: Runner,
        *,
        settings: QueueSettings,
        progress: Optional[ProgressHub] = None,
    ) -> None:
        self._store = store
        self._runner = runner
        self._settings = settings
        self._progress = progress or ProgressHub()
        self._lock = threading.RLock()
        self._active: Dict[str, ActiveJob] = {}
        self._stop_event = threading.Event()
        self._cleanup_thread: Optional[threading.Thread] = None
        self._started = False
        self._ensure_directories()

    # Public API ---------------------------------------------------------
    @property
    def settings(self) -> QueueSettings:
        return self._settings

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def progress(self) -> ProgressHub:
        return self._progress

    @property
    def max_concurrent(self) -> int:
        return self._settings.max_concurrent

    @property
    def running_count(self) -> int:
        with self._lock:
            return len(self._active)

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._store.get_job(job_id)

    def list_jobs(self, owner: Optional[str] = None) -> List[Job]:
        jobs = self._store.list_jobs()
        if owner:
            jobs = [job for job in jobs if job.owner == owner]
        return jobs

    def queue_position(self, job_id: str) -> Optional[int]:
        for index, job in enumerate(self._store.pending_jobs(), start=1):
            if job.id == job_id:
                return index
        return None

    def queue_snapshot(self, owner: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            pending = self._store.pending_jobs()
            positions = {job.id: index for index, job in enumerate(pending, start=1)}
            jobs = self.list_jobs(owner)
            return {
                "active": [job.as_dict() for job in jobs if job.status == JobStatus.PROCESSING],
                "pending": [
                    job.as_dict(queue_position=positions[job.id])
                    for job in pending
                    if not owner or job.owner == owner
                ],
                "jobs": [job.as_dict(queue_position=positions.get(job.id)) for job in jobs],
                "stats": self.stats(),
            }

    def stats(self) -> Dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in JobStatus}
            jobs = self._store.list_jobs()
            for job in jobs:
                counts[job.status.value] += 1
            return {
                "total": len(jobs),
                **counts,
                "max_concurrent": self._settings.max_concurrent,
            }

    def subscribe(self, job_id: str) -> Subscription:
        return self._progress.subscribe(job_id)

    def submit(self, job_type: Any, owner: Any, payload: Any) -> Job:
        parsed_type, owner_text, normalized = validate_submission(job_type, owner, payload)
        job = Job.new(parsed_type, owner_text, normalized)
        failures: List[PersistenceError] = []
        with self._lock:
            job.add_log(f"Job queued ({job.job_type.value}) for {job.owner}")
            self._write(failures, self._store.add_job, job)
            self._admit_locked(failures)
        self._raise_first(failures)
        return job

    def try_admit_next(self) -> Optional[Job]:
        failures: List[PersistenceError] = []
        with self._lock:
            job = self._admit_locked(failures)
        self._raise_first(failures)
        return job

    def on_job_finished(self, job_id: str, outcome: JobOutcome) -> bool:
        """Record a runner's outcome; ``False`` when the job was already settled."""
        failures: List[PersistenceError] = []
        with self._lock:
            handle = self._active.get(job_id)
            if handle is None:
                return False
            self._finish_locked(handle, outcome, failures)
            self._admit_locked(failures)
        self._raise_first(failures)
        return True

    def cancel(self, job_id: str) -> bool:
        failures: List[PersistenceError] = []
        with self._lock:
            job = self._store.get_job(job_id)
            if job is None or job.is_terminal:
                return False

            if job.status == JobStatus.PENDING:
                job.add_log("Job cancelled before start", level="warning")
                self._write(failures, self._store.update_job, job_id, status=JobStatus.CANCELLED)
                self._progress.publish(job_id, ProgressEvent.cancelled())
            else:
                handle = self._active.get(job_id)
                if handle is not None:
                    handle.cancel_event.set()
                    self._release_locked(handle)
                job.add_log(
                    "Cancellation requested; slot released while the runner stops at its next checkpoint.",
                    level="warning",
                )
                self._write(failures, self._store.update_job, job_id, status=JobStatus.CANCELLED)
                self._progress.publish(job_id, ProgressEvent.cancelled())
                self._admit_locked(failures)
        self._raise_first(failures)
        return True

    def delete(self, job_id: str) -> bool:
        failures: List[PersistenceError] = []
        with self._lock:
            if self._store.get_job(job_id) is None:
                return False
            handle = self._active.get(job_id)
            if handle is not None:
                handle.cancel_event.set()
                self._release_locked(handle)
            self._write(failures, self._store.delete_job, job_id)
            self._progress.forget(job_id)
            _JOB_LOGGER.info("[job %s] Job deleted", job_id)
            if handle is not None:
                self._admit_locked(failures)
        self._raise_first(failures)
        return True

    def cleanup(self, now: Optional[float] = None) -> int:
        """Delete finished jobs whose last update is older than the retention window."""
        now = time.time() if now is None else now
        cutoff = now - self._settings.retention_seconds
        failures: List[PersistenceError] = []
        with self._lock:
            expired = [
                job.id
                for job in self._store.jobs_with_status(*self._settings.retention_statuses)
                if job.updated_at < cutoff
            ]
            if not expired:
                return 0
            removed = self._write(failures, self._store.delete_jobs, expired)
            for job_id in expired:
                self._progress.forget(job_id)
        count = removed if removed is not None else len(expired)
        _JOB_LOGGER.info("Cleaned up %d old job(s)", count)
        self._raise_first(failures)
        return count

    def start(self) -> None:
        failures: List[PersistenceError] = []
        with self._lock:
            if self._started:
                return
            self._started = True
            self._stop_event.clear()
            while self._admit_locked(failures) is not None:
                pass
            if self._settings.cleanup_interval > 0:
                self._cleanup_thread = threading.Thread(
                    target=self._cleanup_loop,
                    name="bibletts-queue-cleanup",
                    daemon=True,
                )
                self._cleanup_thread.start()
        self._raise_first(failures)

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop admitting work and signal running jobs to stop.

        Running jobs keep their ``processing`` status on disk, so the next start
        puts them back in the queue.
        """
        self._stop_event.set()
        with self._lock:
            handles = list(self._active.values())
            for handle in handles:
                handle.cancel_event.set()
                if handle.timer is not None:
                    handle.timer.cancel()
        current = threading.current_thread()
        for handle in handles:
            if handle.thread is not None and handle.thread is not current and handle.thread.is_alive():
                handle.thread.join(timeout=timeout)
        if self._cleanup_thread and self._cleanup_thread.is_alive() and self._cleanup_thread is not current:
            self._cleanup_thread.join(timeout=timeout)
        self._cleanup_thread = None
        self._started = False

    # Internal -----------------------------------------------------------
    def _ensure_directories(self) -> None:
        self._settings.output_root.mkdir(parents=True, exist_ok=True)
        self._settings.state_path.parent.mkdir(parents=True, exist_ok=True)

    def _output_dir_for(self, job: Job) -> Path:
        return self._settings.output_root / job.id

    @staticmethod
    def _write(failures: List[PersistenceError], func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except PersistenceError as exc:
            failures.append(exc)
            return None

    @staticmethod
    def _raise_first(failures: List[PersistenceError]) -> None:
        if failures:
            raise failures[0]

    def _admit_locked(self, failures: List[PersistenceError]) -> Optional[Job]:
        if self._stop_event.is_set():
            return None
        if len(self._active) >= self._settings.max_concurrent:
            return None
        pending = self._store.pending_jobs()
        if not pending:
            return None

        job = pending[0]
        handle = ActiveJob(job.id)
        self._active[job.id] = handle
        job.progress = JobProgress(message="Starting", updated_at=time.time())
        job.add_log("Job started")
        self._write(
            failures,
            self._store.update_job,
            job.id,
            status=JobStatus.PROCESSING,
            started_at=time.time(),
            error=None,
        )

        context = JobContext(self, job, handle.cancel_event, self._output_dir_for(job))
        handle.thread = threading.Thread(
            target=self._run_job,
            args=(job, handle, context),
            name=f"bibletts-job-{job.id[:8]}",
            daemon=True,
        )
        if self._settings.job_timeout:
            handle.timer = threading.Timer(self._settings.job_timeout, self._on_timeout, args=(job.id,))
            handle.timer.daemon = True
            handle.timer.start()
        handle.thread.start()
        return job

    def _release_locked(self, handle: ActiveJob) -> None:
        self._active.pop(handle.job_id, None)
        if handle.timer is not None:
            handle.timer.cancel()

    def _finish_locked(self, handle: ActiveJob, outcome: JobOutcome, failures: List[PersistenceError]) -> None:
        job_id = handle.job_id
        job = self._store.get_job(job_id)
        self._release_locked(handle)
        if job is None:
            return
        if outcome.succeeded:
            result = outcome.result or JobResult()
            if job.progress.total:
                job.progress.chunk = job.progress.total
            job.progress.message = "Completed"
            job.progress.updated_at = time.time()
            job.add_log("Job completed", level="success")
            self._write(
                failures,
                self._store.update_job,
                job_id,
                status=JobStatus.COMPLETED,
                result=result,
                error=None,
            )
            self._progress.publish(job_id, ProgressEvent.completed(result.outputs))
        else:
            error = outcome.error or JobError(message="Job failed")
            job.progress.message = "Failed"
            job.progress.updated_at = time.time()
            job.add_log(f"Job failed: {error.message}", level="error")
            self._write(failures, self._store.update_job, job_id, status=JobStatus.FAILED, error=error)
            self._progress.publish(job_id, ProgressEvent.failed(error.message, error.troubleshooting))

    def _run_job(self, job: Job, handle: ActiveJob, context: JobContext) -> None:
        outcome: Optional[JobOutcome] = None
        try:
            result = self._runner(job, context)
        except JobCancelled:
            outcome = None
        except JobFailure as exc:
            outcome = JobOutcome.failure(str(exc), exc.troubleshooting)
        except Exception as exc:
            exc_type = exc.__class__.__name__
            job.add_log(f"Job failed ({exc_type}): {exc}", level="error")
            tb_lines = traceback.format_exception(exc.__class__, exc, exc.__traceback__)
            for line in tb_lines[:20]:
                trimmed = line.rstrip()
                if trimmed:
                    for snippet in trimmed.splitlines():
                        job.add_log(f"TRACE: {snippet}", level="debug")
            outcome = JobOutcome.failure(f"{exc_type}: {exc}")
        else:
            if not handle.cancel_event.is_set():
                outcome = JobOutcome.success(result if isinstance(result, JobResult) else None)

        try:
            if outcome is None:
                self._acknowledge_cancel(handle)
            else:
                self.on_job_finished(job.id, outcome)
        except PersistenceError as exc:
            job.add_log(f"Job outcome recorded in memory only: {exc}", level="error")

    def _acknowledge_cancel(self, handle: ActiveJob) -> None:
        failures: List[PersistenceError] = []
        with self._lock:
            if self._active.get(handle.job_id) is not handle:
                return
            job = self._store.get_job(handle.job_id)
            if self._stop_event.is_set():
                # Shutdown: leave the job processing on disk so the next start requeues it.
                self._release_locked(handle)
                if job is not None:
                    job.add_log("Job interrupted by shutdown", level="warning")
                return
            self._release_locked(handle)
            if job is not None and not job.is_terminal:
                self._write(failures, self._store.update_job, handle.job_id, status=JobStatus.CANCELLED)
                job.add_log("Job stopped by its runner", level="warning")
                self._progress.publish(handle.job_id, ProgressEvent.cancelled("Job stopped by its runner"))
            self._admit_locked(failures)
        self._raise_first(failures)

    def _on_timeout(self, job_id: str) -> None:
        failures: List[PersistenceError] = []
        with self._lock:
            handle = self._active.get(job_id)
            if handle is None:
                return
            handle.cancel_event.set()
            limit = self._settings.job_timeout or 0
            outcome = JobOutcome.failure(
                f"Job exceeded maximum duration of {limit:g} seconds",
                [
                    "Check that the speech synthesis service is reachable",
                    "Split very long passages into smaller jobs",
                    "Raise BIBLETTS_JOB_TIMEOUT if long jobs are expected",
                ],
            )
            self._finish_locked(handle, outcome, failures)
            self._admit_locked(failures)
        for exc in failures:
            _JOB_LOGGER.error("[job %s] Timeout could not be persisted: %s", job_id, exc)

    def _record_progress(self, job_id: str, chunk: int, total: int, message: str) -> None:
        with self._lock:
            if job_id not in self._active:
                return
            job = self._store.get_job(job_id)
            if job is None:
                return
            job.progress = JobProgress(chunk=chunk, total=total, message=message, updated_at=time.time())
        self._progress.publish(job_id, ProgressEvent.progress(chunk, total, message))

    def _cleanup_loop(self) -> None:
        while not self._stop_event.wait(self._settings.cleanup_interval):
            try:
                self.cleanup()
            except PersistenceError as exc:
                _JOB_LOGGER.warning("Scheduled cleanup could not persist: %s", exc)


def default_storage_root() -> Path:
    outputs = Path(get_user_output_path("jobs"))
    outputs.mkdir(parents=True, exist_ok=True)
    return outputs


def build_service(
    runner: Runner,
    *,
    output_root: Optional[Path] = None,
    state_path: Optional[Path] = None,
    max_concurrent: Optional[int] = None,
    settings: Optional[QueueSettings] = None,
    start: bool = True,
) -> ConversionService:
    if settings is None:
        settings = QueueSettings.from_environment(
            output_root=output_root or default_storage_root(),
            state_path=state_path,
        )
    if max_concurrent is not None:
        settings.max_concurrent = max(1, int(max_concurrent))
    store = JobStore(settings.state_path)
    service = ConversionService(store, runner, settings=settings)
    if start:
        service.start()
    return service
