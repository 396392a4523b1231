#!/usr/bin/env python3
"""
aiohttp server that ingests browser tab recordings.

Behavior:
- Each recording is a session with its own backing file; chunks are appended
  in arrival order and counted only once they are written.
- Chunks arrive either one per HTTP request or as binary frames on a
  WebSocket that also carries JSON start/stop commands.
- A WebSocket that goes away mid-recording has its recording force-closed
  and marked interrupted so no file handle leaks.

Endpoints:
  POST   /api/recording/start          -> {recordingId, filename}
  POST   /api/recording/{id}/chunk     -> Append raw body as one chunk
  POST   /api/recording/{id}/stop      -> Close the file, return stats
  GET    /api/recording/{id}/download  -> Completed recording as attachment
  DELETE /api/recording/{id}           -> Drop the session and its file
  GET    /api/recordings               -> JSON listing of sessions
  GET    /api/health                   -> Process status + active sessions
  GET    /ws (or /)                    -> Streaming WebSocket
  GET    /healthz                      -> "ok"
"""

import argparse
import asyncio
import logging
import threading
import time
import uuid
import weakref
from pathlib import Path
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web
from aiohttp.web import AppKey

from .config import get_cfg, recording_settings, reload_cfg
from .recording_errors import RecordingError
from .recording_manager import RecordingManager
from .session_store import SessionStore
from .web_server_helpers.stream_channel import StreamChannel

DEFAULT_LISTEN_HOST = "0.0.0.0"
DEFAULT_LISTEN_PORT = 3000
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

RECORDING_MANAGER_KEY: AppKey[RecordingManager] = web.AppKey("recording_manager", RecordingManager)
RECORDINGS_ROOT_KEY: AppKey[Path] = web.AppKey("recordings_root", Path)
WEBSOCKETS_KEY: AppKey[weakref.WeakSet] = web.AppKey("websockets", weakref.WeakSet)


def build_manager(cfg: dict[str, Any] | None = None) -> RecordingManager:
    """Create the session store and controller described by the configuration."""

    cfg = cfg if cfg is not None else get_cfg()
    settings = recording_settings(cfg)
    recordings_dir = Path(cfg.get("paths", {}).get("recordings_dir") or "recordings").expanduser()
    recordings_dir.mkdir(parents=True, exist_ok=True)
    store = SessionStore(
        recordings_dir,
        filename_prefix=settings["filename_prefix"],
        file_extension=settings["file_extension"],
        fsync=settings["fsync_chunks"],
    )
    return RecordingManager(
        store,
        stop_timeout=settings["stop_timeout_seconds"],
        progress_log_interval=settings["progress_log_interval"],
    )


def build_app(manager: RecordingManager | None = None) -> web.Application:
    log = logging.getLogger("web_server")
    cfg = get_cfg()
    settings = recording_settings(cfg)
    web_cfg = cfg.get("web_server", {})
    cors_raw = web_cfg.get("cors_origin", "*")
    cors_origin = cors_raw.strip() if isinstance(cors_raw, str) else ""
    max_chunk_bytes = settings["max_chunk_bytes"]

    if manager is None:
        manager = build_manager(cfg)

    middlewares: list[Any] = []

    if cors_origin:

        @web.middleware
        async def _cors_middleware(request: web.Request, handler):
            if request.method == "OPTIONS":
                response = web.Response(status=204)
            else:
                response = await handler(request)

            if request.headers.get("Origin"):
                response.headers.setdefault("Access-Control-Allow-Origin", cors_origin)
                response.headers.setdefault("Access-Control-Allow-Methods", "GET,POST,DELETE,OPTIONS")
                response.headers.setdefault("Access-Control-Allow-Headers", "Content-Type")
                response.headers.setdefault("Access-Control-Max-Age", "86400")

            return response

        middlewares.append(_cors_middleware)

    @web.middleware
    async def _recording_errors_middleware(request: web.Request, handler):
        try:
            return await handler(request)
        except RecordingError as exc:
            if exc.status >= 500:
                log.error("%s %s failed: %s", request.method, request.path, exc.message)
            return web.json_response({"success": False, "error": exc.message}, status=exc.status)

    middlewares.append(_recording_errors_middleware)

    app = web.Application(middlewares=middlewares, client_max_size=max_chunk_bytes)
    app[RECORDING_MANAGER_KEY] = manager
    app[RECORDINGS_ROOT_KEY] = manager.store.recordings_dir
    app[WEBSOCKETS_KEY] = weakref.WeakSet()

    # --- HTTP recording API ---
    async def recording_start(_: web.Request) -> web.Response:
        session = await manager.start(transport="http")
        return web.json_response(
            {
                "success": True,
                "recordingId": session.recording_id,
                "filename": session.filename,
            }
        )

    async def recording_chunk(request: web.Request) -> web.Response:
        recording_id = request.match_info["recording_id"]
        # Unknown ids are rejected before the body is buffered.
        manager.get(recording_id)
        data = await request.read()
        receipt = await manager.append_chunk(recording_id, data)
        return web.json_response({"success": True, **receipt.to_payload()})

    async def recording_stop(request: web.Request) -> web.Response:
        recording_id = request.match_info["recording_id"]
        stats = await manager.stop(recording_id)
        return web.json_response({"success": True, **stats.to_payload()})

    async def recording_download(request: web.Request) -> web.StreamResponse:
        recording_id = request.match_info["recording_id"]
        download = await manager.download(recording_id)
        response = web.FileResponse(download.path)
        response.headers["Content-Disposition"] = f'attachment; filename="{download.filename}"'
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    async def recording_delete(request: web.Request) -> web.Response:
        recording_id = request.match_info["recording_id"]
        await manager.delete(recording_id)
        return web.json_response({"success": True})

    async def recordings_list(_: web.Request) -> web.Response:
        return web.json_response({"success": True, "recordings": manager.list_recordings()})

    async def health(_: web.Request) -> web.Response:
        return web.json_response({"success": True, **manager.health()})

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok\n")

    # --- Streaming WebSocket ---
    async def recording_socket(request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse(max_msg_size=max_chunk_bytes)
        if not ws.can_prepare(request).ok:
            if request.path == "/":
                return web.json_response({"success": True, "service": "tab-recorder", "status": "running"})
            raise web.HTTPBadRequest(reason="WebSocket upgrade required")

        await ws.prepare(request)
        channel_id = uuid.uuid4().hex[:8]
        channel = StreamChannel(manager, channel_id=channel_id, logger=log)
        request.app[WEBSOCKETS_KEY].add(ws)
        log.info("WebSocket client %s connected", channel_id)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.BINARY:
                    reply = await channel.handle_binary(msg.data)
                elif msg.type == WSMsgType.TEXT:
                    reply = await channel.handle_text(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    log.warning("WebSocket client %s error: %s", channel_id, ws.exception())
                    break
                else:
                    continue
                try:
                    await ws.send_json(reply)
                except ConnectionResetError:
                    log.info("WebSocket client %s went away before reply", channel_id)
                    break
        finally:
            request.app[WEBSOCKETS_KEY].discard(ws)
            if channel.active:
                log.warning("WebSocket client %s left with recording %s active", channel_id, channel.recording_id)
            await channel.close()
            log.info("WebSocket client %s disconnected", channel_id)

        return ws

    async def _close_websockets(app: web.Application) -> None:
        for ws in set(app[WEBSOCKETS_KEY]):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

    async def _close_recordings(app: web.Application) -> None:
        closed = await app[RECORDING_MANAGER_KEY].shutdown()
        if closed:
            log.info("Closed %d active recording(s) on shutdown", closed)

    app.on_shutdown.append(_close_websockets)
    app.on_cleanup.append(_close_recordings)

    # Routes
    app.router.add_post("/api/recording/start", recording_start)
    app.router.add_post("/api/recording/{recording_id}/chunk", recording_chunk)
    app.router.add_post("/api/recording/{recording_id}/stop", recording_stop)
    app.router.add_get("/api/recording/{recording_id}/download", recording_download)
    app.router.add_delete("/api/recording/{recording_id}", recording_delete)
    app.router.add_get("/api/recordings", recordings_list)
    app.router.add_get("/api/health", health)
    app.router.add_get("/ws", recording_socket)
    app.router.add_get("/", recording_socket)
    app.router.add_get("/healthz", healthz)
    return app


def _resolve_web_server_runtime(cfg: dict[str, Any]) -> tuple[str, int]:
    web_cfg = cfg.get("web_server", {}) if isinstance(cfg, dict) else {}
    host_raw = web_cfg.get("listen_host")
    host = host_raw.strip() if isinstance(host_raw, str) and host_raw.strip() else DEFAULT_LISTEN_HOST
    try:
        port = int(web_cfg.get("listen_port") or DEFAULT_LISTEN_PORT)
    except (TypeError, ValueError):
        port = DEFAULT_LISTEN_PORT
    return host, port


def _resolve_log_level(log_level: str, cfg: dict[str, Any]) -> int:
    if cfg.get("logging", {}).get("dev_mode"):
        return logging.DEBUG
    return getattr(logging, log_level.upper(), logging.INFO)


class WebServerHandle:
    """Handle returned by start_web_server_in_thread(). Call stop() to cleanly shut down."""
    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop, runner: web.AppRunner, app: web.Application):
        self.thread = thread
        self.loop = loop
        self.runner = runner
        self.app = app

    def stop(self, timeout: float = 5.0):
        log = logging.getLogger("web_server")
        log.info("Shutting down server ...")
        if self.loop.is_running():
            fut = asyncio.run_coroutine_threadsafe(self.runner.cleanup(), self.loop)
            try:
                fut.result(timeout=timeout)
            except Exception as e:
                log.warning("Error awaiting cleanup: %r", e)
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        log.info("web_server stopped")


def start_web_server_in_thread(
    host: str = DEFAULT_LISTEN_HOST,
    port: int = DEFAULT_LISTEN_PORT,
    *,
    access_log: bool = False,
    log_level: str = "INFO",
    manager: RecordingManager | None = None,
) -> WebServerHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop."""
    logging.basicConfig(level=_resolve_log_level(log_level, get_cfg()), format=LOG_FORMAT)
    log = logging.getLogger("web_server")

    loop = asyncio.new_event_loop()
    started = threading.Event()
    boxes: dict[str, Any] = {}

    def _run():
        asyncio.set_event_loop(loop)
        try:
            app = build_app(manager)
            runner = web.AppRunner(app, access_log=logging.getLogger("aiohttp.access") if access_log else None)
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, host, port)
            loop.run_until_complete(site.start())
        except BaseException as exc:
            boxes["error"] = exc
            started.set()
            loop.close()
            return
        boxes["runner"] = runner
        boxes["app"] = app
        log.info("Tab recorder backend running on http://%s:%s", host, port)
        log.info("WebSocket endpoint on ws://%s:%s/ws", host, port)
        log.info("Recordings directory: %s", app[RECORDINGS_ROOT_KEY])
        started.set()
        try:
            loop.run_forever()
        finally:
            try:
                loop.run_until_complete(runner.cleanup())
            except Exception as exc:
                log.warning("Error during aiohttp runner cleanup: %r", exc)
            loop.close()

    t = threading.Thread(target=_run, name="web_server", daemon=True)
    t.start()
    started.wait()

    if "error" in boxes:
        raise RuntimeError(f"Unable to start web_server: {boxes['error']}") from boxes["error"]

    return WebServerHandle(t, loop, boxes["runner"], boxes["app"])


def cli_main():
    parser = argparse.ArgumentParser(description="Tab recording ingest server.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument(
        "--port",
        type=int,
        help="Override bind port (defaults to config).",
    )
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args()

    cfg = reload_cfg()
    logging.basicConfig(level=_resolve_log_level(args.log_level, cfg), format=LOG_FORMAT)
    log = logging.getLogger("web_server")

    host_cfg, port_cfg = _resolve_web_server_runtime(cfg)
    bind_host = args.host if args.host else host_cfg
    bind_port = args.port if args.port else port_cfg
    log.info(
        "Starting web_server on %s:%s (access_log=%s)",
        bind_host,
        bind_port,
        "on" if args.access_log else "off",
    )

    try:
        handle = start_web_server_in_thread(
            host=bind_host,
            port=bind_port,
            access_log=args.access_log,
            log_level=args.log_level,
        )
    except RuntimeError as exc:
        log.error("%s", exc)
        return 1
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        handle.stop()
        return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
