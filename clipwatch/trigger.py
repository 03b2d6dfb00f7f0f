"""Keyword matching and cooldown gating for incoming log lines."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence

DEFAULT_COOLDOWN_SECONDS = 180.0
DEFAULT_CAPTURE_DELAY_SECONDS = 120.0
DEFAULT_SEGMENTS_TO_CAPTURE = 2

log = logging.getLogger("clipwatch.trigger")


@dataclass(frozen=True)
class TriggerEvent:
    keyword: str
    detected_at: float


def match_keywords(
    message: str,
    keywords: Iterable[str],
    now: float | None = None,
) -> list[TriggerEvent]:
    """Return one event per keyword contained in ``message`` (case-sensitive)."""

    detected_at = time.time() if now is None else now
    return [
        TriggerEvent(keyword=keyword, detected_at=detected_at)
        for keyword in keywords
        if keyword and keyword in message
    ]


class CooldownGate:
    """Enforce a minimum spacing between accepted trigger events.

    Acceptance and the update of the last accepted timestamp happen under one
    lock, so two events racing through the gate can never both be accepted
    inside the same cooldown window.
    """

    def __init__(self, cooldown: float = DEFAULT_COOLDOWN_SECONDS) -> None:
        if cooldown < 0:
            raise ValueError("cooldown must not be negative")
        self.cooldown = float(cooldown)
        self._lock = threading.Lock()
        self._last_accepted: float | None = None

    @property
    def last_accepted(self) -> float | None:
        with self._lock:
            return self._last_accepted

    def try_accept(self, event: TriggerEvent) -> bool:
        with self._lock:
            last = self._last_accepted
            if last is not None and event.detected_at - last < self.cooldown:
                return False
            self._last_accepted = event.detected_at
            return True

    def remaining(self, now: float | None = None) -> float:
        """Seconds until the gate accepts again (0 when open)."""
        current = time.time() if now is None else now
        with self._lock:
            last = self._last_accepted
        if last is None:
            return 0.0
        return max(0.0, self.cooldown - (current - last))


class ExtractionScheduler(Protocol):
    def schedule(self, delay: float, count: int) -> Any: ...


class KeywordMonitor:
    """Turn log lines into scheduled evidence extractions."""

    def __init__(
        self,
        keywords: Sequence[str],
        gate: CooldownGate,
        scheduler: ExtractionScheduler,
        *,
        capture_delay: float = DEFAULT_CAPTURE_DELAY_SECONDS,
        segments_to_capture: int = DEFAULT_SEGMENTS_TO_CAPTURE,
        log_messages: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.keywords = list(keywords)
        self.gate = gate
        self.scheduler = scheduler
        self.capture_delay = max(0.0, float(capture_delay))
        self.segments_to_capture = max(1, int(segments_to_capture))
        self.log_messages = bool(log_messages)
        self._clock = clock
        if not self.keywords:
            log.warning("No keywords configured; log lines will never trigger a capture")

    @classmethod
    def from_cfg(
        cls,
        cfg: Mapping[str, Any],
        scheduler: ExtractionScheduler,
    ) -> "KeywordMonitor":
        trigger_cfg = cfg.get("trigger") or {}
        logging_cfg = cfg.get("logging") or {}
        return cls(
            cfg["event_source"]["keywords"],
            CooldownGate(float(trigger_cfg.get("cooldown_sec", DEFAULT_COOLDOWN_SECONDS))),
            scheduler,
            capture_delay=float(
                trigger_cfg.get("capture_delay_sec", DEFAULT_CAPTURE_DELAY_SECONDS)
            ),
            segments_to_capture=int(
                trigger_cfg.get("segments_to_capture", DEFAULT_SEGMENTS_TO_CAPTURE)
            ),
            log_messages=bool(logging_cfg.get("log_messages", True)),
        )

    def handle_message(self, message: str) -> list[TriggerEvent]:
        """Dispatch one log line; returns the events that were accepted."""

        if self.log_messages:
            log.info("[log] %s", message)
        else:
            log.debug("[log] %s", message)

        accepted: list[TriggerEvent] = []
        for event in match_keywords(message, self.keywords, self._clock()):
            if not self.gate.try_accept(event):
                log.info("Keyword [%s] detected but still cooling down", event.keyword)
                continue
            log.info(
                "Keyword [%s] detected; copying the latest %d segments in %.0fs",
                event.keyword,
                self.segments_to_capture,
                self.capture_delay,
            )
            self.scheduler.schedule(self.capture_delay, self.segments_to_capture)
            accepted.append(event)
        return accepted
