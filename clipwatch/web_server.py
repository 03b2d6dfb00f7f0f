#!/usr/bin/env python3
"""
aiohttp web server for clipwatch's evidence browser.

Endpoints:
  GET /                    -> Evidence browser HTML
  GET /api/errors          -> JSON {count, data: [{name, size, time, url}]}, newest first
  GET /api/error/<name>    -> Raw bytes of one evidence clip (name reduced to its base filename)
  GET /api/status          -> JSON snapshot of listener, trigger, extraction and recorder state
  Static /error_videos/*   -> Evidence directory
  Static /web/*            -> Bundled web assets
  GET /healthz             -> "ok"
"""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
from pathlib import Path
from typing import Any, Mapping

from aiohttp import web
from aiohttp.web import AppKey

from . import webui
from .agent import CaptureAgent
from .config import ConfigError, active_config_path, get_cfg, reload_cfg
from .evidence_store import EVIDENCE_URL_PREFIX, list_evidence, resolve_evidence
from .segments import SegmentPattern

DEFAULT_LISTEN_HOST = "0.0.0.0"
DEFAULT_LISTEN_PORT = 10189
PAGE_TITLE = "clipwatch evidence"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

EVIDENCE_ROOT_KEY: AppKey[Path] = web.AppKey("evidence_root", Path)
EVIDENCE_EXT_KEY: AppKey[str] = web.AppKey("evidence_extension", str)
AGENT_KEY: AppKey[CaptureAgent] = web.AppKey("capture_agent", CaptureAgent)


def _quiet_noisy_dependencies(level: int = logging.WARNING) -> None:
    """Tone down overly chatty third-party loggers."""

    for name in ("aiohttp.access", "asyncio"):
        logging.getLogger(name).setLevel(level)


def build_app(cfg: Mapping[str, Any], agent: CaptureAgent | None = None) -> web.Application:
    log = logging.getLogger("clipwatch.web")
    evidence_root = Path(cfg["paths"]["evidence_dir"])
    evidence_root.mkdir(parents=True, exist_ok=True)
    extension = SegmentPattern.from_cfg(cfg.get("recorder")).extension

    app = web.Application()
    app[EVIDENCE_ROOT_KEY] = evidence_root
    app[EVIDENCE_EXT_KEY] = extension
    if agent is not None:
        app[AGENT_KEY] = agent

        async def _start_agent(_: web.Application) -> None:
            await agent.start()

        async def _stop_agent(_: web.Application) -> None:
            await agent.stop()

        app.on_startup.append(_start_agent)
        app.on_cleanup.append(_stop_agent)

    async def index(_: web.Request) -> web.Response:
        html = webui.render_template(
            "index.html",
            title=PAGE_TITLE,
            list_url="/api/errors",
            clip_url="/api/error/",
        )
        return web.Response(text=html, content_type="text/html", charset="utf-8")

    async def errors_list(request: web.Request) -> web.Response:
        root = request.app[EVIDENCE_ROOT_KEY]
        try:
            entries = await asyncio.to_thread(list_evidence, root, request.app[EVIDENCE_EXT_KEY])
        except OSError as exc:
            log.warning("Unable to list evidence in %s: %s", root, exc)
            return web.json_response({"error": str(exc)}, status=500)
        data = [entry.to_dict() for entry in entries]
        return web.json_response({"count": len(data), "data": data})

    async def error_file(request: web.Request) -> web.StreamResponse:
        name = request.match_info.get("name", "")
        resolved = await asyncio.to_thread(resolve_evidence, request.app[EVIDENCE_ROOT_KEY], name)
        if resolved is None:
            return web.json_response({"error": "evidence not found"}, status=404)
        response = web.FileResponse(resolved)
        response.headers["Content-Disposition"] = f'inline; filename="{resolved.name}"'
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    async def status(request: web.Request) -> web.Response:
        capture_agent = request.app.get(AGENT_KEY)
        if capture_agent is None:
            return web.json_response({"running": False})
        payload = await asyncio.to_thread(capture_agent.status)
        return web.json_response(payload)

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok")

    app.router.add_get("/", index)
    app.router.add_get("/api/errors", errors_list)
    app.router.add_get("/api/error/{name:.*}", error_file)
    app.router.add_get("/api/status", status)
    app.router.add_get("/healthz", healthz)
    app.router.add_static(f"{EVIDENCE_URL_PREFIX}/", evidence_root, show_index=False)
    app.router.add_static(f"{webui.STATIC_URL_PREFIX}/", webui.static_directory(), show_index=False)
    return app


async def serve(
    cfg: Mapping[str, Any],
    host: str,
    port: int,
    *,
    access_log: bool = False,
) -> None:
    """Run the agent and web server until SIGINT/SIGTERM."""

    log = logging.getLogger("clipwatch.web")
    app = build_app(cfg, CaptureAgent(cfg))
    runner = web.AppRunner(
        app,
        access_log=logging.getLogger("aiohttp.access") if access_log else None,
    )
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info("Web server started on http://%s:%s", host, port)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, stop_event.set)
    try:
        await stop_event.wait()
    finally:
        log.info("Stopping web server ...")
        await runner.cleanup()
        log.info("Web server stopped")


def cli_main() -> int:
    parser = argparse.ArgumentParser(description="Keyword-triggered screen evidence recorder.")
    parser.add_argument("--config", help="Path to config.yaml (overrides CLIPWATCH_CONFIG).")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument("--port", type=int, help="Override bind port (defaults to config).")
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default=None, help="Python logging level (default: INFO).")
    args = parser.parse_args()

    if args.config:
        os.environ["CLIPWATCH_CONFIG"] = args.config

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    log = logging.getLogger("clipwatch")
    try:
        cfg = reload_cfg() if args.config else get_cfg()
    except ConfigError as exc:
        log.error("Unable to load configuration: %s", exc)
        return 1
    log.info("Configuration: %s", active_config_path() or "built-in defaults")

    level_name = args.log_level
    if level_name is None:
        level_name = "DEBUG" if cfg.get("logging", {}).get("dev_mode") else "INFO"
    logging.getLogger().setLevel(getattr(logging, level_name.upper(), logging.INFO))
    if not args.access_log:
        _quiet_noisy_dependencies()

    server_cfg = cfg.get("web_server", {})
    host = args.host or server_cfg.get("listen_host") or DEFAULT_LISTEN_HOST
    port = args.port or int(server_cfg.get("listen_port") or DEFAULT_LISTEN_PORT)

    try:
        asyncio.run(serve(cfg, host, port, access_log=args.access_log))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
