"""Wire recorder, retention, log listener and extraction into one service."""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Mapping

import aiohttp

from .extraction import DeferredExtractionScheduler, EvidenceExtractor, build_extractor
from .listener import EventStreamListener
from .metadata import (
    DEFAULT_TIMEOUT_SECONDS,
    IndexMetadata,
    MetadataError,
    fetch_index_metadata,
)
from .recorder import ScreenRecorder
from .segments import RetentionManager, SegmentPattern, list_segments
from .trigger import KeywordMonitor

log = logging.getLogger("clipwatch.agent")


class CaptureAgent:
    """Owns every background component; started and stopped with the web app."""

    def __init__(self, cfg: Mapping[str, Any]) -> None:
        self.cfg = cfg
        self.segments_dir = Path(cfg["paths"]["segments_dir"])
        self.evidence_dir = Path(cfg["paths"]["evidence_dir"])
        self.pattern = SegmentPattern.from_cfg(cfg.get("recorder"))
        self.session: aiohttp.ClientSession | None = None
        self.extractor: EvidenceExtractor | None = None
        self.scheduler: DeferredExtractionScheduler | None = None
        self.monitor: KeywordMonitor | None = None
        self.listener: EventStreamListener | None = None
        self.retention = RetentionManager.from_cfg(cfg)
        recorder_cfg = cfg.get("recorder") or {}
        self.recorder: ScreenRecorder | None = (
            ScreenRecorder.from_cfg(cfg) if recorder_cfg.get("enabled", True) else None
        )
        self.started_at: float | None = None

    async def _fetch_metadata(self) -> IndexMetadata:
        if self.session is None:
            raise MetadataError("capture agent is not running")
        metadata_cfg = self.cfg.get("metadata") or {}
        return await fetch_index_metadata(
            self.session,
            self.cfg["event_source"]["server_addr"],
            timeout=float(metadata_cfg.get("timeout_sec", DEFAULT_TIMEOUT_SECONDS)),
        )

    async def start(self) -> None:
        if self.started_at is not None:
            return
        self.segments_dir.mkdir(parents=True, exist_ok=True)
        self.evidence_dir.mkdir(parents=True, exist_ok=True)

        self.session = aiohttp.ClientSession()
        self.extractor = build_extractor(self.cfg, self._fetch_metadata)
        self.scheduler = DeferredExtractionScheduler(self.extractor)
        self.monitor = KeywordMonitor.from_cfg(self.cfg, self.scheduler)
        self.listener = EventStreamListener.from_cfg(
            self.cfg, self.monitor.handle_message, self.session
        )

        if self.recorder is not None:
            self.recorder.start()
        else:
            log.info("Recorder disabled; expecting segments from an external process")
        self.retention.start()
        self.listener.start()
        self.started_at = time.time()
        log.info(
            "Capture agent started (segments: %s, evidence: %s, keywords: %s)",
            self.segments_dir,
            self.evidence_dir,
            ", ".join(self.monitor.keywords) or "-",
        )

    async def stop(self) -> None:
        if self.started_at is None:
            return
        self.started_at = None
        if self.listener is not None:
            await self.listener.stop()
        if self.scheduler is not None:
            pending = self.scheduler.pending
            if pending:
                log.info("Cancelling %d pending evidence extraction(s)", pending)
            await self.scheduler.cancel_all()
        await self.retention.stop()
        if self.recorder is not None:
            await self.recorder.stop()
        if self.session is not None:
            await self.session.close()
            self.session = None
        log.info("Capture agent stopped")

    def status(self) -> dict[str, Any]:
        try:
            segment_count = len(list_segments(self.segments_dir, self.pattern))
        except OSError:
            segment_count = 0
        gate = self.monitor.gate if self.monitor is not None else None
        return {
            "running": self.started_at is not None,
            "started_at": self.started_at,
            "listener": {
                "state": self.listener.state.value if self.listener else "disconnected",
                "url": self.listener.url if self.listener else None,
                "connect_attempts": self.listener.connect_attempts if self.listener else 0,
                "messages_received": self.listener.messages_received if self.listener else 0,
                "last_error": self.listener.last_error if self.listener else None,
            },
            "trigger": {
                "keywords": list(self.monitor.keywords) if self.monitor else [],
                "last_accepted": gate.last_accepted if gate else None,
                "cooldown_remaining": gate.remaining() if gate else 0.0,
            },
            "extraction": {
                "pending": self.scheduler.pending if self.scheduler else 0,
                "busy": self.extractor.busy if self.extractor else False,
                "runs": self.extractor.runs if self.extractor else 0,
            },
            "recorder": {
                "enabled": self.recorder is not None,
                "state": self.recorder.state.value if self.recorder else "disabled",
                "runs": self.recorder.runs if self.recorder else 0,
                "last_returncode": self.recorder.last_returncode if self.recorder else None,
            },
            "segments": {
                "directory": str(self.segments_dir),
                "count": segment_count,
                "max": self.retention.max_segments,
            },
        }
