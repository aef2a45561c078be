from __future__ import annotations

from pathlib import Path

from bibletts.webui.conversion_runner import (
    PlaceholderBackend,
    group_sentences,
    run_conversion_job,
    split_into_sentences,
)
from bibletts.webui.models import JobStatus


def test_split_into_sentences_splits_on_punctuation():
    assert split_into_sentences("Hello world. How are you? Great!") == ["Hello world.", "How are you?", "Great!"]
    assert split_into_sentences("") == []
    assert split_into_sentences(None) == []


def test_group_sentences_groups_by_size():
    parts = ["A.", "B.", "C.", "D."]
    assert group_sentences(parts, 2) == ["A. B.", "C. D."]
    assert group_sentences(parts, 3) == ["A. B. C.", "D."]
    assert group_sentences(parts, 0) == ["A.", "B.", "C.", "D."]


def test_tts_job_writes_segments_and_stitched_file(make_service, wait_for):
    service = make_service(run_conversion_job)
    job = service.submit(
        "tts",
        "alice",
        {"text": "One. Two! Three? Four. Five.", "sentencesPerChunk": 2, "voiceModelId": "narrator", "format": "wav"},
    )

    assert wait_for(lambda: job.status is JobStatus.COMPLETED)

    outputs = [Path(path) for path in job.result.outputs]
    assert [path.name for path in outputs] == [
        f"{job.id}-000.wav.txt",
        f"{job.id}-001.wav.txt",
        f"{job.id}-002.wav.txt",
        f"{job.id}-stitched.wav.txt",
    ]
    assert all(path.exists() for path in outputs)
    assert outputs[0].parent.name == job.id
    assert outputs[0].read_text(encoding="utf-8") == "VOICE:narrator\nOne. Two!"
    assert job.result.audio == str(outputs[-1])
    assert "\n---\n" in outputs[-1].read_text(encoding="utf-8")
    assert job.progress.chunk == job.progress.total == 3


def test_bible_video_job_renders_video(make_service, wait_for):
    service = make_service(run_conversion_job)
    job = service.submit(
        "bible_video",
        "alice",
        {"book": "John", "chapter": 1, "text": "In the beginning was the Word.", "video": {"resolution": "720p"}},
    )

    assert wait_for(lambda: job.status is JobStatus.COMPLETED)

    video = Path(job.result.video)
    assert video.name == f"{job.id}-video.mp4.txt"
    assert "RESOLUTION:720p" in video.read_text(encoding="utf-8")
    stitched = Path(job.result.audio).read_text(encoding="utf-8")
    assert stitched.startswith("VOICE:default\nJohn, Chapter 1.")


def test_bible_job_without_text_fails_with_hints(make_service, wait_for):
    service = make_service(run_conversion_job)
    job = service.submit("bible", "alice", {"book": "John", "chapter": 3})

    assert wait_for(lambda: job.status is JobStatus.FAILED)
    assert job.error.message == "No passage text available for this job"
    assert job.error.troubleshooting


def test_runner_stops_at_checkpoint_when_cancelled(make_service, wait_for):
    class SlowBackend(PlaceholderBackend):
        def __init__(self):
            self.calls = 0

        def synthesize_chunk(self, text, **kwargs):
            self.calls += 1
            if self.calls == 1:
                service.cancel(job_holder[0])
            return super().synthesize_chunk(text, **kwargs)

    backend = SlowBackend()
    job_holder = []

    def runner(job, context):
        job_holder.append(job.id)
        return run_conversion_job(job, context, backend=backend)

    service = make_service(runner)
    job = service.submit("tts", "alice", {"text": "One. Two. Three.", "sentencesPerChunk": 1})

    assert wait_for(lambda: job.status is JobStatus.CANCELLED)
    assert wait_for(lambda: backend.calls == 1)
    assert job.result is None
