from __future__ import annotations

import re
from pathlib import Path
from typing import Any, List, Mapping, Optional, Protocol

from .models import Job, JobResult, JobType
from .service import JobContext, JobFailure


_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def split_into_sentences(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return [part.strip() for part in _SENTENCE_BOUNDARY.split(str(text)) if part.strip()]


def group_sentences(sentences: List[str], sentences_per_chunk: int = 3) -> List[str]:
    size = max(1, int(sentences_per_chunk or 1))
    return [" ".join(sentences[index : index + size]) for index in range(0, len(sentences), size)]


class SynthesisBackend(Protocol):
    def resolve_passage(self, payload: Mapping[str, Any]) -> str:
        ...

    def synthesize_chunk(self, text: str, *, voice: str, audio_format: str, output_dir: Path, job_id: str, index: int) -> Path:
        ...

    def stitch(self, segments: List[Path], *, audio_format: str, output_dir: Path, job_id: str) -> Path:
        ...

    def render_video(self, audio: Path, settings: Mapping[str, Any], *, output_dir: Path, job_id: str) -> Path:
        ...


class PlaceholderBackend:
    """Writes text files in place of audio and video.

    Stands in for the real speech, Bible and video services so the queue can be
    run end to end without them.
    """

    def resolve_passage(self, payload: Mapping[str, Any]) -> str:
        text = str(payload.get("text") or "").strip()
        if not text:
            raise JobFailure(
                "No passage text available for this job",
                [
                    "Fetch the passage before queueing the job and include it as 'text'",
                    "Check that the Bible text service is reachable",
                ],
            )
        return f"{payload.get('book')}, Chapter {payload.get('chapter')}.\n{text}"

    def synthesize_chunk(self, text: str, *, voice: str, audio_format: str, output_dir: Path, job_id: str, index: int) -> Path:
        target = output_dir / f"{job_id}-{index:03d}.{audio_format}.txt"
        target.write_text(f"VOICE:{voice}\n{text}", encoding="utf-8")
        return target

    def stitch(self, segments: List[Path], *, audio_format: str, output_dir: Path, job_id: str) -> Path:
        target = output_dir / f"{job_id}-stitched.{audio_format}.txt"
        content = "\n---\n".join(path.read_text(encoding="utf-8") for path in segments)
        target.write_text(content, encoding="utf-8")
        return target

    def render_video(self, audio: Path, settings: Mapping[str, Any], *, output_dir: Path, job_id: str) -> Path:
        target = output_dir / f"{job_id}-video.{settings.get('output_format', 'mp4')}.txt"
        lines = [f"AUDIO:{audio.name}"]
        lines.extend(f"{key.upper()}:{value}" for key, value in sorted(settings.items()) if value is not None)
        target.write_text("\n".join(lines), encoding="utf-8")
        return target


def run_conversion_job(job: Job, context: JobContext, backend: Optional[SynthesisBackend] = None) -> JobResult:
    backend = backend or PlaceholderBackend()
    payload = job.payload
    context.log("Preparing conversion pipeline")

    if job.job_type is JobType.TTS:
        text = str(payload.get("text") or "")
    else:
        text = backend.resolve_passage(payload)

    chunks = group_sentences(split_into_sentences(text), payload.get("sentences_per_chunk", 3))
    if not chunks:
        raise JobFailure("No speakable text found", ["Check that the submitted text is not empty"])

    total = len(chunks)
    audio_format = payload.get("format", "mp3")
    voice = payload.get("voice_model_id", "default")
    output_dir = context.output_dir
    context.log(f"Synthesizing {total} chunk(s) with voice {voice}")
    context.report_progress(0, total, "Starting synthesis")

    segments: List[Path] = []
    for index, chunk in enumerate(chunks):
        context.check_cancelled()
        segments.append(
            backend.synthesize_chunk(
                chunk,
                voice=voice,
                audio_format=audio_format,
                output_dir=output_dir,
                job_id=job.id,
                index=index,
            )
        )
        context.report_progress(index + 1, total, f"Synthesized chunk {index + 1} of {total}")

    context.check_cancelled()
    stitched = backend.stitch(segments, audio_format=audio_format, output_dir=output_dir, job_id=job.id)
    context.log(f"Stitched audio written to {stitched.name}", level="success")
    result = JobResult(outputs=[str(path) for path in segments] + [str(stitched)], audio=str(stitched))

    if job.job_type is JobType.BIBLE_VIDEO:
        context.check_cancelled()
        context.report_progress(total, total, "Rendering video")
        video = backend.render_video(stitched, payload.get("video") or {}, output_dir=output_dir, job_id=job.id)
        result.outputs.append(str(video))
        result.video = str(video)
        context.log(f"Video written to {video.name}", level="success")

    return result
