from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from urllib.parse import quote

__all__ = [
    "EVIDENCE_URL_PREFIX",
    "EvidenceEntry",
    "list_evidence",
    "resolve_evidence",
    "sanitize_name",
]

EVIDENCE_URL_PREFIX = "/error_videos"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(slots=True)
class EvidenceEntry:
    """Representation of a single evidence clip on disk."""

    name: str
    size: int
    modified: float
    url: str

    @property
    def time(self) -> str:
        return datetime.fromtimestamp(self.modified).strftime(TIME_FORMAT)

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "size": self.size,
            "time": self.time,
            "url": self.url,
        }


def sanitize_name(name: str) -> str:
    """Reduce a requested name to its base filename, whatever separators it uses."""
    return os.path.basename(name.replace("\\", "/").rstrip("/"))


def list_evidence(root: Path, extension: str = ".mp4") -> list[EvidenceEntry]:
    """Evidence clips with ``extension``, newest first."""

    try:
        with os.scandir(root) as it:
            candidates = list(it)
    except FileNotFoundError:
        return []

    entries: list[EvidenceEntry] = []
    for candidate in candidates:
        if not candidate.name.endswith(extension):
            continue
        try:
            if not candidate.is_file():
                continue
            stat = candidate.stat()
        except FileNotFoundError:
            continue
        entries.append(
            EvidenceEntry(
                name=candidate.name,
                size=stat.st_size,
                modified=stat.st_mtime,
                url=f"{EVIDENCE_URL_PREFIX}/{quote(candidate.name)}",
            )
        )
    entries.sort(key=lambda entry: (entry.modified, entry.name), reverse=True)
    return entries


def resolve_evidence(root: Path, name: str) -> Path | None:
    cleaned = sanitize_name(name)
    if cleaned in {"", ".", ".."}:
        return None
    candidate = root / cleaned
    if not candidate.is_file():
        return None
    return candidate
