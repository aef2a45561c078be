from __future__ import annotations

import json

import pytest

from bibletts.webui.models import InvalidTransition, JobStatus
from bibletts.webui.store import STATE_VERSION, JobStore, PersistenceError


def test_store_round_trips_jobs(tmp_path):
    path = tmp_path / "job_queue.json"
    store = JobStore(path)
    first = store.create_job("tts", "alice", {"text": "Hi."})
    second = store.create_job("bible", "bob", {"book": "John", "chapter": 1, "text": "In the beginning."})
    store.update_job(second.id, status=JobStatus.CANCELLED)

    reloaded = JobStore(path)

    assert reloaded.get_job(first.id) == first
    assert reloaded.get_job(second.id).status is JobStatus.CANCELLED
    assert [job.id for job in reloaded.pending_jobs()] == [first.id]
    third = reloaded.create_job("tts", "carol", {"text": "Later."})
    assert third.sequence > second.sequence


def test_snapshot_file_is_versioned(tmp_path):
    path = tmp_path / "job_queue.json"
    store = JobStore(path)
    job = store.create_job("tts", "alice", {"text": "Hi."})

    payload = json.loads(path.read_text(encoding="utf-8"))

    assert payload["version"] == STATE_VERSION
    assert payload["jobs"][0]["id"] == job.id
    assert not path.with_suffix(".tmp").exists()


def test_load_resets_processing_jobs(tmp_path):
    path = tmp_path / "job_queue.json"
    store = JobStore(path)
    job = store.create_job("tts", "alice", {"text": "Hi."})
    store.update_job(job.id, status=JobStatus.PROCESSING, started_at=123.0)

    reloaded = JobStore(path).get_job(job.id)

    assert reloaded.status is JobStatus.PENDING
    assert reloaded.started_at is None
    assert reloaded.recovery_count == 1
    assert reloaded.interrupted_at is not None
    assert "restored after restart" in reloaded.logs[-1].message
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk["jobs"][0]["status"] == "pending"


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        json.dumps(["a", "list"]),
        json.dumps({"version": 99, "jobs": []}),
        json.dumps({"version": STATE_VERSION, "jobs": "nope"}),
    ],
)
def test_unreadable_snapshot_starts_empty(tmp_path, content):
    path = tmp_path / "job_queue.json"
    path.write_text(content, encoding="utf-8")

    store = JobStore(path)

    assert len(store) == 0
    store.create_job("tts", "alice", {"text": "Hi."})
    assert len(JobStore(path)) == 1


def test_malformed_entries_are_skipped(tmp_path):
    path = tmp_path / "job_queue.json"
    good = JobStore(path).create_job("tts", "alice", {"text": "Hi."})
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["jobs"].append({"id": "broken"})
    payload["jobs"].append({"id": "bad-error", "type": "tts", "created_at": 1.0, "status": "failed", "error": "boom"})
    payload["jobs"].append({"id": "bad-result", "type": "tts", "created_at": 1.0, "status": "completed", "result": ["a.wav"]})
    payload["jobs"].append("not a job")
    path.write_text(json.dumps(payload), encoding="utf-8")

    store = JobStore(path)

    assert len(store) == 1
    assert good.id in store
    assert store.get_job("bad-error") is None
    assert store.get_job("bad-result") is None


def test_write_failure_keeps_memory_authoritative(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    store = JobStore(blocker / "job_queue.json")

    with pytest.raises(PersistenceError) as excinfo:
        store.create_job("tts", "alice", {"text": "Hi."})

    job_id = excinfo.value.job_id
    assert store.get_job(job_id) is not None
    assert store.get_job(job_id).status is JobStatus.PENDING


def test_update_rejects_immutable_and_illegal_changes(tmp_path):
    store = JobStore(tmp_path / "job_queue.json")
    job = store.create_job("tts", "alice", {"text": "Hi."})

    with pytest.raises(ValueError, match="Immutable"):
        store.update_job(job.id, owner="mallory")
    with pytest.raises(ValueError, match="Unknown job field"):
        store.update_job(job.id, colour="blue")
    with pytest.raises(InvalidTransition):
        store.update_job(job.id, status=JobStatus.COMPLETED)

    assert job.owner == "alice"
    assert job.status is JobStatus.PENDING
    assert store.update_job("missing", status=JobStatus.CANCELLED) is None


def test_update_bumps_updated_at(tmp_path):
    store = JobStore(tmp_path / "job_queue.json")
    job = store.create_job("tts", "alice", {"text": "Hi."})
    job.updated_at = 0.0

    store.update_job(job.id, status=JobStatus.PROCESSING)

    assert job.updated_at > 0.0


def test_delete_jobs(tmp_path):
    path = tmp_path / "job_queue.json"
    store = JobStore(path)
    jobs = [store.create_job("tts", "alice", {"text": f"Job {index}."}) for index in range(3)]

    assert store.delete_job(jobs[0].id) is True
    assert store.delete_job(jobs[0].id) is False
    assert store.delete_jobs([jobs[1].id, "missing"]) == 1
    assert [job.id for job in JobStore(path).list_jobs()] == [jobs[2].id]
