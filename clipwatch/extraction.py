"""Promote recent segments into the permanent evidence directory.

Extractions are serialized by a single lock: every deferred request waits for
the previous run to finish before it lists, checks and copies segments.
Per-segment problems (still growing, vanished, unreadable) are recorded in the
result and never abort the remaining copies.

Clips are named `<script>_<line>_<YYYYmmddHHMMSS><ext>`. When two copies land in
the same second the later one gets a `_1`, `_2`, ... suffix before the
extension, so an existing clip is never overwritten.
"""
from __future__ import annotations

import asyncio
import collections
import contextlib
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from .metadata import IndexMetadata, MetadataError, PLACEHOLDER
from .segments import Segment, SegmentPattern, list_segments, newest_first
from .stability import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_TIMEOUT_SECONDS as DEFAULT_STABILITY_TIMEOUT_SECONDS,
    Stability,
    wait_for_stable,
)

DEFAULT_SEGMENTS_TO_CAPTURE = 2
EVIDENCE_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
PARTIAL_SUFFIX = ".part"
RESULT_HISTORY_LIMIT = 32

log = logging.getLogger("clipwatch.extraction")

MetadataFetcher = Callable[[], Awaitable[IndexMetadata]]


class ExtractionError(Exception):
    """Structural failure that prevents an extraction from running."""


@dataclass
class ClipOutcome:
    source: Path
    status: str  # copied | unstable | missing | failed
    destination: Path | None = None
    error: str | None = None


@dataclass
class ExtractionResult:
    success: bool
    error: str | None = None
    metadata: IndexMetadata | None = None
    clips: list[ClipOutcome] = field(default_factory=list)

    @property
    def copied(self) -> list[ClipOutcome]:
        return [clip for clip in self.clips if clip.status == "copied"]

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "error": self.error,
            "clips": [
                {
                    "source": str(clip.source),
                    "status": clip.status,
                    "destination": str(clip.destination) if clip.destination else None,
                    "error": clip.error,
                }
                for clip in self.clips
            ],
        }


def _unique_destination(directory: Path, stem: str, extension: str) -> Path:
    candidate = directory / f"{stem}{extension}"
    counter = 1
    while candidate.exists():
        candidate = directory / f"{stem}_{counter}{extension}"
        counter += 1
    return candidate


def _copy_segment(source: Path, destination: Path) -> None:
    partial = destination.with_name(destination.name + PARTIAL_SUFFIX)
    try:
        shutil.copyfile(source, partial)
        os.replace(partial, destination)
    except OSError:
        with contextlib.suppress(OSError):
            partial.unlink()
        raise


class EvidenceExtractor:
    def __init__(
        self,
        segments_dir: Path,
        evidence_dir: Path,
        *,
        fetch_metadata: MetadataFetcher | None = None,
        pattern: SegmentPattern | None = None,
        stability_timeout: float = DEFAULT_STABILITY_TIMEOUT_SECONDS,
        stability_poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        placeholder: str = PLACEHOLDER,
        now: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.segments_dir = Path(segments_dir)
        self.evidence_dir = Path(evidence_dir)
        self.pattern = pattern or SegmentPattern()
        self.stability_timeout = float(stability_timeout)
        self.stability_poll_interval = float(stability_poll_interval)
        self.placeholder = placeholder
        self._fetch_metadata = fetch_metadata
        self._now = now
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self.runs = 0

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def _resolve_metadata(self) -> IndexMetadata:
        if self._fetch_metadata is None:
            return IndexMetadata.placeholder(self.placeholder)
        try:
            return await self._fetch_metadata()
        except MetadataError as exc:
            log.warning("Unable to fetch index metadata: %s", exc)
        except Exception as exc:  # noqa: BLE001
            log.warning("Index metadata lookup failed unexpectedly: %r", exc)
        return IndexMetadata.placeholder(self.placeholder)

    async def _select_segments(self, count: int) -> list[Segment]:
        try:
            segments = await asyncio.to_thread(list_segments, self.segments_dir, self.pattern)
        except OSError as exc:
            raise ExtractionError(f"unable to list segments: {exc}") from exc
        if not segments:
            raise ExtractionError("no segments available")
        return newest_first(segments)[:count]

    async def _capture(self, segment: Segment, metadata: IndexMetadata) -> ClipOutcome:
        log.info("Checking whether segment is stable: %s", segment.path)
        stability = await wait_for_stable(
            segment.path,
            self.stability_timeout,
            self.stability_poll_interval,
            sleep=self._sleep,
        )
        if stability is Stability.MISSING:
            log.warning("Segment vanished before it could be copied, skipping: %s", segment.path)
            return ClipOutcome(segment.path, "missing")
        if stability is not Stability.STABLE:
            log.warning("Segment not stable, skipping: %s", segment.path)
            return ClipOutcome(segment.path, "unstable")

        stem = metadata.filename_stem(self._now().strftime(EVIDENCE_TIMESTAMP_FORMAT))
        destination = _unique_destination(self.evidence_dir, stem, segment.path.suffix)
        try:
            await asyncio.to_thread(_copy_segment, segment.path, destination)
        except OSError as exc:
            log.warning("Failed to copy %s -> %s: %s", segment.path, destination, exc)
            return ClipOutcome(segment.path, "failed", destination, str(exc))
        log.info("Copied %s -> %s", segment.path, destination)
        return ClipOutcome(segment.path, "copied", destination)

    async def _run(self, count: int) -> ExtractionResult:
        try:
            await asyncio.to_thread(self.evidence_dir.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise ExtractionError(f"unable to create evidence directory: {exc}") from exc

        metadata = await self._resolve_metadata()
        selected = await self._select_segments(count)

        result = ExtractionResult(success=True, metadata=metadata)
        for segment in selected:
            result.clips.append(await self._capture(segment, metadata))
        return result

    async def extract(self, count: int = DEFAULT_SEGMENTS_TO_CAPTURE) -> ExtractionResult:
        if count < 1:
            raise ValueError("count must be at least 1")
        async with self._lock:
            self.runs += 1
            try:
                result = await self._run(count)
            except ExtractionError as exc:
                log.error("Evidence extraction failed: %s", exc)
                return ExtractionResult(success=False, error=str(exc))
        log.info(
            "Evidence extraction finished: %d of %d selected segments copied to %s",
            len(result.copied),
            len(result.clips),
            self.evidence_dir,
        )
        return result


class DeferredExtractionScheduler:
    """Own the delayed extraction requests spawned by accepted triggers."""

    def __init__(
        self,
        extractor: EvidenceExtractor,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.extractor = extractor
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()
        self.history: collections.deque[ExtractionResult] = collections.deque(
            maxlen=RESULT_HISTORY_LIMIT
        )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def tasks(self) -> list[asyncio.Task]:
        return list(self._tasks)

    def schedule(self, delay: float, count: int = DEFAULT_SEGMENTS_TO_CAPTURE) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(
            self._deferred(max(0.0, float(delay)), count),
            name="deferred-extraction",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deferred(self, delay: float, count: int) -> ExtractionResult:
        if delay:
            await self._sleep(delay)
        result = await self.extractor.extract(count)
        self.history.append(result)
        return result

    async def drain(self) -> list[ExtractionResult]:
        """Wait for every pending request, including ones scheduled meanwhile."""
        collected: list[ExtractionResult] = []
        while self._tasks:
            done = await asyncio.gather(*list(self._tasks), return_exceptions=True)
            collected.extend(item for item in done if isinstance(item, ExtractionResult))
        return collected

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def build_extractor(cfg: Mapping[str, Any], fetch_metadata: MetadataFetcher | None) -> EvidenceExtractor:
    stability_cfg = cfg.get("stability") or {}
    metadata_cfg = cfg.get("metadata") or {}
    return EvidenceExtractor(
        Path(cfg["paths"]["segments_dir"]),
        Path(cfg["paths"]["evidence_dir"]),
        fetch_metadata=fetch_metadata,
        pattern=SegmentPattern.from_cfg(cfg.get("recorder")),
        stability_timeout=float(
            stability_cfg.get("timeout_sec", DEFAULT_STABILITY_TIMEOUT_SECONDS)
        ),
        stability_poll_interval=float(
            stability_cfg.get("poll_interval_sec", DEFAULT_POLL_INTERVAL_SECONDS)
        ),
        placeholder=str(metadata_cfg.get("placeholder") or PLACEHOLDER),
    )
