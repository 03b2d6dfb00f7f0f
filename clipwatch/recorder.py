#!/usr/bin/env python3
"""
ScreenRecorder: runs the external ffmpeg desktop encoder.

- ffmpeg writes fixed-length segments (``record_NNN.mp4``) into the segment
  directory using its segment muxer
- if ffmpeg exits it is respawned after a short delay (unless disabled); new
  runs continue numbering after the newest existing segment
- the recorder never touches segment contents; retention and extraction only
  see the files ffmpeg leaves behind
"""
from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import shutil
from pathlib import Path
from typing import Any, Mapping, Sequence

from .segments import SegmentPattern, next_segment_index

DEFAULT_SEGMENT_SECONDS = 180
DEFAULT_RESTART_DELAY_SECONDS = 5.0
TERMINATE_TIMEOUT_SECONDS = 5.0

log = logging.getLogger("clipwatch.recorder")


class RecorderState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPED = "stopped"
    FAILED = "failed"


class ScreenRecorder:
    def __init__(
        self,
        segments_dir: Path,
        *,
        ffmpeg_path: str = "ffmpeg",
        input_args: Sequence[str] = (),
        output_args: Sequence[str] = (),
        segment_seconds: int = DEFAULT_SEGMENT_SECONDS,
        pattern: SegmentPattern | None = None,
        restart: bool = True,
        restart_delay: float = DEFAULT_RESTART_DELAY_SECONDS,
    ) -> None:
        self.segments_dir = Path(segments_dir)
        self.ffmpeg_path = ffmpeg_path
        self.input_args = list(input_args)
        self.output_args = list(output_args)
        self.segment_seconds = int(segment_seconds)
        self.pattern = pattern or SegmentPattern()
        self.restart = bool(restart)
        self.restart_delay = max(0.0, float(restart_delay))
        self.state = RecorderState.IDLE
        self.runs = 0
        self.last_returncode: int | None = None
        self._proc: asyncio.subprocess.Process | None = None
        self._task: asyncio.Task | None = None

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any]) -> "ScreenRecorder":
        recorder_cfg = cfg.get("recorder") or {}
        return cls(
            Path(cfg["paths"]["segments_dir"]),
            ffmpeg_path=str(recorder_cfg.get("ffmpeg_path") or "ffmpeg"),
            input_args=[str(arg) for arg in recorder_cfg.get("input_args") or []],
            output_args=[str(arg) for arg in recorder_cfg.get("output_args") or []],
            segment_seconds=int(recorder_cfg.get("segment_seconds", DEFAULT_SEGMENT_SECONDS)),
            pattern=SegmentPattern.from_cfg(recorder_cfg),
            restart=bool(recorder_cfg.get("restart", True)),
            restart_delay=float(
                recorder_cfg.get("restart_delay_sec", DEFAULT_RESTART_DELAY_SECONDS)
            ),
        )

    def build_command(self, start_number: int = 0) -> list[str]:
        cmd = [self.ffmpeg_path, "-hide_banner", "-loglevel", "warning", "-y"]
        cmd.extend(self.input_args)
        cmd.extend(self.output_args)
        cmd.extend(
            [
                "-f", "segment",
                "-segment_time", str(self.segment_seconds),
                "-segment_start_number", str(start_number),
                "-reset_timestamps", "1",
                str(self.segments_dir / self.pattern.output_template),
            ]
        )
        return cmd

    async def _spawn(self) -> asyncio.subprocess.Process:
        start_number = await asyncio.to_thread(
            next_segment_index, self.segments_dir, self.pattern
        )
        cmd = self.build_command(start_number)
        log.info("Launching ffmpeg: %s", " ".join(cmd))
        return await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )

    async def run(self) -> None:
        if shutil.which(self.ffmpeg_path) is None:
            log.error("ffmpeg not found: %s; recording disabled", self.ffmpeg_path)
            self.state = RecorderState.FAILED
            return

        try:
            while True:
                try:
                    await asyncio.to_thread(self.segments_dir.mkdir, parents=True, exist_ok=True)
                    self._proc = await self._spawn()
                except OSError as exc:
                    log.error("Unable to start ffmpeg: %s", exc)
                    self.state = RecorderState.FAILED
                else:
                    self.runs += 1
                    self.state = RecorderState.RUNNING
                    log.info(
                        "Recording started, %ss per segment", self.segment_seconds
                    )
                    self.last_returncode = await self._proc.wait()
                    self._proc = None
                    log.warning("ffmpeg exited with rc=%s", self.last_returncode)
                    self.state = RecorderState.STOPPED

                if not self.restart:
                    log.warning("Recorder restart disabled; recording has stopped")
                    return
                self.state = RecorderState.RESTARTING
                await asyncio.sleep(self.restart_delay)
        finally:
            await self._terminate()

    async def _terminate(self) -> None:
        proc = self._proc
        self._proc = None
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            rc = await asyncio.wait_for(proc.wait(), timeout=TERMINATE_TIMEOUT_SECONDS)
            log.info("ffmpeg terminated with rc=%s", rc)
        except asyncio.TimeoutError:
            log.warning("ffmpeg did not exit after SIGTERM; sending SIGKILL")
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
        self.state = RecorderState.STOPPED

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self.run(), name="recorder")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
