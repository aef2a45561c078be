from __future__ import annotations

import io

import pytest

from bibletts.webui.models import (
    _JOB_LOGGER,
    MAX_STORED_LOGS,
    InvalidTransition,
    Job,
    JobError,
    JobResult,
    JobStatus,
    JobType,
    allowed_next_statuses,
    ensure_transition,
)


def test_allowed_transitions_follow_lifecycle():
    assert allowed_next_statuses(JobStatus.PENDING) == [JobStatus.CANCELLED, JobStatus.PROCESSING]
    assert JobStatus.COMPLETED in allowed_next_statuses(JobStatus.PROCESSING)
    for status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
        assert status.is_terminal
        assert allowed_next_statuses(status) == []


@pytest.mark.parametrize(
    "current, attempted",
    [
        (JobStatus.PENDING, JobStatus.COMPLETED),
        (JobStatus.PENDING, JobStatus.FAILED),
        (JobStatus.COMPLETED, JobStatus.PROCESSING),
        (JobStatus.CANCELLED, JobStatus.PENDING),
        (JobStatus.FAILED, JobStatus.COMPLETED),
    ],
)
def test_ensure_transition_rejects_illegal_moves(current, attempted):
    with pytest.raises(InvalidTransition) as excinfo:
        ensure_transition(current, attempted)
    assert excinfo.value.current is current
    assert excinfo.value.attempted is attempted


def test_job_type_parse_accepts_aliases():
    assert JobType.parse("TTS") is JobType.TTS
    assert JobType.parse("bible-video") is JobType.BIBLE_VIDEO
    assert JobType.parse("passage") is JobType.BIBLE
    with pytest.raises(ValueError):
        JobType.parse("podcast")


def test_job_record_round_trip_skips_progress():
    job = Job.new("bible", "alice", {"book": "John", "chapter": 3})
    job.sequence = 4
    job.status = JobStatus.FAILED
    job.error = JobError("offline", ["Check your internet connection"])
    job.progress.chunk = 2
    job.add_log("something broke", level="error")

    record = job.to_record()
    assert "progress" not in record
    restored = Job.from_record(record)

    assert restored == job
    assert restored.logs[-1].message == "something broke"
    assert restored.progress.chunk == 0


def test_as_dict_exposes_progress_and_position():
    job = Job.new("tts", "bob", {"text": "Hi."})
    job.result = JobResult(outputs=["a.mp3"], audio="a.mp3")
    job.progress.chunk = 1
    job.progress.total = 4

    data = job.as_dict(queue_position=3)

    assert data["queue_position"] == 3
    assert data["progress"]["percentage"] == 25.0
    assert data["result"]["outputs"] == ["a.mp3"]
    assert data["type"] == "tts"


def test_job_add_log_trims_history():
    job = Job.new("tts", "bob", {"text": "Hi."})
    for index in range(MAX_STORED_LOGS + 5):
        job.add_log(f"line {index}", level="debug")

    assert len(job.logs) == MAX_STORED_LOGS
    assert job.logs[0].message == "line 5"


def test_job_add_log_emits_to_stream():
    job = Job.new("tts", "bob", {"text": "Hi."})

    captured_buffers = []
    for handler in list(_JOB_LOGGER.handlers):
        if not hasattr(handler, "setStream"):
            continue
        buffer = io.StringIO()
        original_stream = getattr(handler, "stream", None)
        handler.setStream(buffer)  # type: ignore[attr-defined]
        captured_buffers.append((handler, original_stream, buffer))

    assert captured_buffers, "Expected job logger to have stream handlers"

    try:
        job.add_log("Test log line", level="success")
        outputs = [buffer.getvalue() for _, _, buffer in captured_buffers]
    finally:
        for handler, original_stream, _ in captured_buffers:
            handler.setStream(original_stream)  # type: ignore[attr-defined]

    assert any(f"[job {job.id}] Test log line" in output for output in outputs)


def test_job_add_log_handles_exception(capsys):
    job = Job.new("tts", "bob", {"text": "Hi."})
    original_log = _JOB_LOGGER.log

    def side_effect(*args, **kwargs):
        raise RuntimeError("Logger exploded")

    _JOB_LOGGER.log = side_effect
    try:
        job.add_log("This should trigger fallback")
    finally:
        _JOB_LOGGER.log = original_log

    captured = capsys.readouterr()
    assert f"Logging failed for job {job.id}" in captured.err
    assert "Logger exploded" in captured.err
    assert job.logs[-1].message == "This should trigger fallback"
