from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List

import pytest

from bibletts.webui.models import Job, JobResult
from bibletts.webui.service import ConversionService, JobContext, QueueSettings
from bibletts.webui.store import JobStore


class BlockingRunner:
    """Runner whose jobs stay busy until the test releases them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._gates: Dict[str, threading.Event] = {}
        self._failures: Dict[str, Exception] = {}
        self.started: List[str] = []
        self.finished: List[str] = []

    def gate(self, job_id: str) -> threading.Event:
        with self._lock:
            return self._gates.setdefault(job_id, threading.Event())

    def release(self, job_id: str, error: Exception = None) -> None:
        if error is not None:
            self._failures[job_id] = error
        self.gate(job_id).set()

    def __call__(self, job: Job, context: JobContext) -> JobResult:
        gate = self.gate(job.id)
        with self._lock:
            self.started.append(job.id)
        while not gate.wait(0.01):
            context.check_cancelled()
        error = self._failures.get(job.id)
        if error is not None:
            raise error
        with self._lock:
            self.finished.append(job.id)
        return JobResult(outputs=[f"{job.id}.mp3"], audio=f"{job.id}.mp3")


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def blocking_runner():
    return BlockingRunner()


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state" / "job_queue.json"


@pytest.fixture
def make_service(tmp_path, state_path):
    services: List[ConversionService] = []

    def factory(runner, *, max_concurrent: int = 3, start: bool = True, path=None, **overrides) -> ConversionService:
        settings = QueueSettings(
            state_path=path or state_path,
            output_root=tmp_path / "outputs",
            max_concurrent=max_concurrent,
            cleanup_interval=0,
            **overrides,
        )
        service = ConversionService(JobStore(settings.state_path), runner, settings=settings)
        if start:
            service.start()
        services.append(service)
        return service

    yield factory

    for service in services:
        service.shutdown(timeout=1.0)
