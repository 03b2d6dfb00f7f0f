"""Segment discovery and retention for the rotating capture window."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

DEFAULT_SEGMENT_PREFIX = "record_"
DEFAULT_SEGMENT_EXTENSION = ".mp4"
DEFAULT_MAX_SEGMENTS = 5
DEFAULT_RETENTION_INTERVAL_SECONDS = 60.0

log = logging.getLogger("clipwatch.segments")


@dataclass(frozen=True)
class SegmentPattern:
    """Naming scheme of encoder segments, e.g. ``record_007.mp4``."""

    prefix: str = DEFAULT_SEGMENT_PREFIX
    extension: str = DEFAULT_SEGMENT_EXTENSION

    @classmethod
    def from_cfg(cls, recorder_cfg: Mapping[str, Any] | None) -> "SegmentPattern":
        recorder_cfg = recorder_cfg or {}
        prefix = str(recorder_cfg.get("segment_prefix") or DEFAULT_SEGMENT_PREFIX)
        extension = str(recorder_cfg.get("segment_extension") or DEFAULT_SEGMENT_EXTENSION)
        if not extension.startswith("."):
            extension = f".{extension}"
        return cls(prefix=prefix, extension=extension)

    @property
    def regex(self) -> re.Pattern[str]:
        return re.compile(rf"^{re.escape(self.prefix)}(\d+){re.escape(self.extension)}$")

    @property
    def output_template(self) -> str:
        """ffmpeg segment muxer output name."""
        return f"{self.prefix}%03d{self.extension}"

    def index_of(self, name: str) -> int | None:
        match = self.regex.match(name)
        if match is None:
            return None
        return int(match.group(1))


@dataclass(frozen=True)
class Segment:
    path: Path
    index: int
    mtime: float
    size: int

    @property
    def name(self) -> str:
        return self.path.name


@dataclass
class RetentionResult:
    """Summary of a single retention pass."""

    seen: int = 0
    deleted: list[Path] = field(default_factory=list)
    failed: list[Path] = field(default_factory=list)


def list_segments(directory: Path, pattern: SegmentPattern | None = None) -> list[Segment]:
    """Snapshot the segment files currently present in ``directory``.

    Raises ``OSError`` when the directory itself cannot be listed. Files that
    disappear between the listing and their ``stat`` call are left out.
    """

    pattern = pattern or SegmentPattern()
    regex = pattern.regex
    segments: list[Segment] = []
    with os.scandir(directory) as entries:
        for entry in entries:
            match = regex.match(entry.name)
            if match is None:
                continue
            try:
                if not entry.is_file():
                    continue
                stat = entry.stat()
            except FileNotFoundError:
                continue
            segments.append(
                Segment(
                    path=Path(entry.path),
                    index=int(match.group(1)),
                    mtime=stat.st_mtime,
                    size=stat.st_size,
                )
            )
    return segments


def newest_first(segments: list[Segment]) -> list[Segment]:
    return sorted(segments, key=lambda seg: (seg.mtime, seg.index), reverse=True)


def next_segment_index(directory: Path, pattern: SegmentPattern | None = None) -> int:
    """Index the encoder should continue from so existing files are kept."""

    try:
        segments = list_segments(directory, pattern)
    except FileNotFoundError:
        return 0
    if not segments:
        return 0
    return max(seg.index for seg in segments) + 1


def prune_segments(
    directory: Path,
    max_segments: int = DEFAULT_MAX_SEGMENTS,
    pattern: SegmentPattern | None = None,
) -> RetentionResult:
    """Delete all but the ``max_segments`` most recently modified segments."""

    if max_segments < 0:
        raise ValueError("max_segments must not be negative")

    result = RetentionResult()
    try:
        segments = list_segments(directory, pattern)
    except OSError as exc:
        log.warning("Unable to list segments in %s: %s", directory, exc)
        return result

    result.seen = len(segments)
    if len(segments) <= max_segments:
        return result

    segments.sort(key=lambda seg: (seg.mtime, seg.index))
    for segment in segments[: len(segments) - max_segments]:
        log.info("Deleting old segment: %s", segment.path)
        try:
            segment.path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            log.warning("Failed to delete segment %s: %s", segment.path, exc)
            result.failed.append(segment.path)
        else:
            result.deleted.append(segment.path)
    return result


class RetentionManager:
    """Periodically prune the segment directory to the newest N files."""

    def __init__(
        self,
        directory: Path,
        *,
        max_segments: int = DEFAULT_MAX_SEGMENTS,
        interval: float = DEFAULT_RETENTION_INTERVAL_SECONDS,
        pattern: SegmentPattern | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.directory = Path(directory)
        self.max_segments = int(max_segments)
        self.interval = float(interval)
        self.pattern = pattern or SegmentPattern()
        self.passes = 0
        self._task: asyncio.Task | None = None

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any]) -> "RetentionManager":
        retention_cfg = cfg.get("retention") or {}
        return cls(
            Path(cfg["paths"]["segments_dir"]),
            max_segments=int(retention_cfg.get("max_segments", DEFAULT_MAX_SEGMENTS)),
            interval=float(retention_cfg.get("interval_sec", DEFAULT_RETENTION_INTERVAL_SECONDS)),
            pattern=SegmentPattern.from_cfg(cfg.get("recorder")),
        )

    async def run_once(self) -> RetentionResult:
        result = await asyncio.to_thread(
            prune_segments, self.directory, self.max_segments, self.pattern
        )
        self.passes += 1
        if result.deleted or result.failed:
            log.debug(
                "Retention pass %d: %d seen, %d deleted, %d failed",
                self.passes,
                result.seen,
                len(result.deleted),
                len(result.failed),
            )
        return result

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - keep the loop alive
                log.warning("Retention pass failed: %s", exc)

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self.run(), name="retention")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
