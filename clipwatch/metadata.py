"""Correlating context fetched from the remote index service."""
from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any

import aiohttp

DEFAULT_TIMEOUT_SECONDS = 10.0
PLACEHOLDER = "unknown"

_PATH_SEPARATORS_RE = re.compile(r"[\\/]+")
_UNSAFE_FILENAME_CHARS_RE = re.compile(r'[\\/:*?"<>|\x00-\x1f]')


class MetadataError(Exception):
    """Raised when the index service cannot provide usable metadata."""


@dataclass(frozen=True)
class IndexMetadata:
    script_name: str
    line: str

    @classmethod
    def placeholder(cls, value: str = PLACEHOLDER) -> "IndexMetadata":
        return cls(script_name=value, line=value)

    def filename_stem(self, timestamp: str) -> str:
        return f"{self.script_name}_{self.line}_{timestamp}"


def base_component(value: Any, default: str = PLACEHOLDER) -> str:
    """Last path component of ``value``; both ``/`` and ``\\`` separate."""

    text = str(value).strip()
    parts = [part for part in _PATH_SEPARATORS_RE.split(text) if part]
    return parts[-1] if parts else default


def safe_filename_token(value: Any, default: str = PLACEHOLDER) -> str:
    text = _UNSAFE_FILENAME_CHARS_RE.sub("-", str(value).strip())
    return text or default


def parse_index_payload(payload: Any, default: str = PLACEHOLDER) -> IndexMetadata:
    if not isinstance(payload, dict):
        raise MetadataError("index response is not a JSON object")
    script = payload.get("scriptName")
    line = payload.get("line")
    return IndexMetadata(
        script_name=safe_filename_token(script if script is not None else default, default),
        line=safe_filename_token(base_component(line if line is not None else default, default), default),
    )


def index_url(server_addr: str) -> str:
    return f"http://{server_addr}/api/index"


async def fetch_index_metadata(
    session: aiohttp.ClientSession,
    server_addr: str,
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> IndexMetadata:
    """Query ``GET /api/index``; any non-200 or unparsable body is a failure."""

    url = index_url(server_addr)
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            if resp.status != 200:
                raise MetadataError(f"{url} returned HTTP {resp.status}")
            body = await resp.read()
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise MetadataError(f"request to {url} failed: {exc}") from exc

    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise MetadataError(f"invalid JSON from {url}: {exc}") from exc
    return parse_index_payload(payload)
