#!/usr/bin/env python3
"""
aiohttp server exposing the application preferences.

Endpoints:
  GET  /api/v2/app/preferences     -> full preferences snapshot (JSON)
  POST /api/v2/app/setPreferences  -> apply a sparse patch (JSON body or form field "json")
  GET  /api/v2/app/version         -> application version (text)
  GET  /api/v2/app/webapiVersion   -> web API version (text)
  GET  /api/v2/app/buildInfo       -> runtime and library versions (JSON)
  GET  /api/v2/app/defaultSavePath -> default save path (text)
  POST /api/v2/app/shutdown        -> reply, then stop the server
  GET  /healthz                    -> "ok"
"""

import argparse
import asyncio
import logging
import platform
import ssl
import struct
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import aiohttp
import ruamel.yaml
import yaml
from aiohttp import web
from aiohttp.web import AppKey

from .config import ConfigPersistenceError, apply_config_migrations, get_cfg, reload_cfg
from .patch_reader import MalformedPatch, PatchError
from .preferences import PreferenceService

APP_VERSION = "v1.0.0"
WEB_API_VERSION = "2.2.0"

WEB_SERVER_EXECUTOR_MAX_WORKERS = 2
SHUTDOWN_DELAY_SECONDS = 0.1

SERVICE_KEY: AppKey[PreferenceService] = web.AppKey("preference_service", PreferenceService)
SHUTDOWN_EVENT_KEY: AppKey[asyncio.Event] = web.AppKey("shutdown_event", asyncio.Event)

_FORM_CONTENT_TYPES = {"application/x-www-form-urlencoded", "multipart/form-data"}


def build_info() -> dict[str, Any]:
    return {
        "python": platform.python_version(),
        "aiohttp": aiohttp.__version__,
        "pyyaml": yaml.__version__,
        "ruamel.yaml": ruamel.yaml.__version__,
        "openssl": ssl.OPENSSL_VERSION,
        "bitness": struct.calcsize("P") * 8,
    }


async def _read_patch_body(request: web.Request) -> str | bytes:
    if request.content_type in _FORM_CONTENT_TYPES:
        form = await request.post()
        value = form.get("json")
        if not isinstance(value, str):
            raise MalformedPatch("Missing form field 'json'")
        return value
    return await request.read()


def build_app(service: PreferenceService | None = None) -> web.Application:
    log = logging.getLogger("prefsd.web")
    if service is None:
        apply_config_migrations(logger=log)
        service = PreferenceService.from_config(get_cfg())

    app = web.Application()
    app[SERVICE_KEY] = service
    app[SHUTDOWN_EVENT_KEY] = asyncio.Event()
    _ = service.locale_state.gettext

    async def preferences_get(request: web.Request) -> web.Response:
        loop = asyncio.get_running_loop()
        snapshot = await loop.run_in_executor(None, service.snapshot)
        return web.json_response(snapshot)

    async def preferences_update(request: web.Request) -> web.Response:
        loop = asyncio.get_running_loop()
        try:
            raw = await _read_patch_body(request)
            report = await loop.run_in_executor(None, service.apply_patch, raw)
        except PatchError as exc:
            errors = [str(exc)]
            return web.json_response({"error": errors[0], "errors": errors}, status=400)
        except ConfigPersistenceError as exc:
            log.warning("Unable to persist preferences: %s", exc)
            return web.json_response(
                {"error": f"{_('Unable to save preferences')}: {exc}"},
                status=500,
            )
        except Exception as exc:  # pragma: no cover - defensive logging
            log.exception("Unexpected preferences failure: %s", exc)
            return web.json_response(
                {"error": _("Unexpected error while saving preferences")},
                status=500,
            )

        return web.json_response(report.to_payload())

    async def version(request: web.Request) -> web.Response:
        return web.Response(text=APP_VERSION)

    async def webapi_version(request: web.Request) -> web.Response:
        return web.Response(text=WEB_API_VERSION)

    async def build_info_get(request: web.Request) -> web.Response:
        return web.json_response(build_info())

    async def default_save_path(request: web.Request) -> web.Response:
        return web.Response(text=service.default_save_path())

    async def shutdown(request: web.Request) -> web.Response:
        log.info("Shutdown request from Web UI")
        # Reply before stopping.
        asyncio.get_running_loop().call_later(
            SHUTDOWN_DELAY_SECONDS, request.app[SHUTDOWN_EVENT_KEY].set
        )
        return web.Response(text="")

    async def healthz(request: web.Request) -> web.Response:
        return web.Response(text="ok")

    app.router.add_get("/api/v2/app/preferences", preferences_get)
    app.router.add_post("/api/v2/app/setPreferences", preferences_update)
    app.router.add_get("/api/v2/app/version", version)
    app.router.add_get("/api/v2/app/webapiVersion", webapi_version)
    app.router.add_get("/api/v2/app/buildInfo", build_info_get)
    app.router.add_get("/api/v2/app/defaultSavePath", default_save_path)
    app.router.add_post("/api/v2/app/shutdown", shutdown)
    app.router.add_get("/healthz", healthz)
    return app


class ServerHandle:
    """Handle returned by start_server_in_thread(). Call stop() to cleanly shut down."""

    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop, runner: web.AppRunner, app: web.Application):
        self.thread = thread
        self.loop = loop
        self.runner = runner
        self.app = app

    def shutdown_requested(self) -> bool:
        return self.app[SHUTDOWN_EVENT_KEY].is_set()

    def stop(self, timeout: float = 5.0) -> None:
        log = logging.getLogger("prefsd.web")
        log.info("Stopping prefsd ...")
        if self.loop.is_running():
            self.loop.call_soon_threadsafe(self.app[SHUTDOWN_EVENT_KEY].set)

            async def _cleanup():
                try:
                    await self.runner.cleanup()
                except Exception as e:
                    log.warning("Error during aiohttp runner cleanup: %r", e)

            fut = asyncio.run_coroutine_threadsafe(_cleanup(), self.loop)
            try:
                fut.result(timeout=timeout)
            except Exception as e:
                log.warning("Error awaiting cleanup: %r", e)
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        log.info("prefsd stopped")


def start_server_in_thread(
    host: str = "0.0.0.0",
    port: int = 8080,
    *,
    access_log: bool = False,
    log_level: str = "INFO",
    service: PreferenceService | None = None,
) -> ServerHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    log = logging.getLogger("prefsd.web")

    loop = asyncio.new_event_loop()
    executor = ThreadPoolExecutor(
        max_workers=WEB_SERVER_EXECUTOR_MAX_WORKERS,
        thread_name_prefix="prefsd_io",
    )
    started = threading.Event()
    boxes: dict[str, Any] = {}

    def _run():
        asyncio.set_event_loop(loop)
        loop.set_default_executor(executor)
        try:
            app = build_app(service)
            runner = web.AppRunner(app, access_log=logging.getLogger("aiohttp.access") if access_log else None)
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, host, port)
            loop.run_until_complete(site.start())
        except Exception as exc:
            boxes["error"] = exc
            started.set()
            executor.shutdown(wait=False)
            return
        boxes["runner"] = runner
        boxes["app"] = app
        log.info("prefsd started on %s:%s", host, port)
        started.set()
        try:
            loop.run_forever()
        finally:
            try:
                loop.run_until_complete(runner.cleanup())
            except Exception:
                pass
            executor.shutdown(wait=True, cancel_futures=True)

    t = threading.Thread(target=_run, name="prefsd_web", daemon=True)
    t.start()
    started.wait()
    if "error" in boxes:
        raise RuntimeError(f"Unable to start prefsd on {host}:{port}: {boxes['error']}") from boxes["error"]

    return ServerHandle(t, loop, boxes["runner"], boxes["app"])


def cli_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Preferences web API server.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument(
        "--port",
        type=int,
        help="Override bind port (defaults to config).",
    )
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default=None, help="Python logging level (default: INFO, DEBUG when DEV=1).")
    args = parser.parse_args(argv)

    cfg = reload_cfg()
    log_level = args.log_level or ("DEBUG" if cfg.get("logging", {}).get("dev_mode") else "INFO")
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    log = logging.getLogger("prefsd.web")

    apply_config_migrations(logger=log)
    cfg = reload_cfg()
    server_cfg = cfg.get("server", {})
    bind_host = args.host if args.host else server_cfg.get("listen_host") or "0.0.0.0"
    try:
        port_cfg = int(server_cfg.get("listen_port") or 8080)
    except (TypeError, ValueError):
        port_cfg = 8080
    bind_port = args.port if args.port else port_cfg
    log.info(
        "Starting prefsd on %s:%s (access_log=%s)",
        bind_host,
        bind_port,
        "on" if args.access_log else "off",
    )

    try:
        handle = start_server_in_thread(
            host=bind_host,
            port=bind_port,
            access_log=args.access_log,
            log_level=log_level,
            service=PreferenceService.from_config(cfg),
        )
    except RuntimeError as exc:
        log.error("%s", exc)
        return 1
    try:
        while not handle.shutdown_requested():
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    handle.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
