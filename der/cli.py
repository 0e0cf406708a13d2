from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import signal
import sys

import requests

from .api import create_server
from .docker_ops import RuntimeAccessDenied, RuntimeUnavailable
from .registrator import AccessDenied, Registrator, StoreUnavailable
from .settings import Settings

logger = logging.getLogger("der")

# Exit codes, so a supervisor can tell failure causes apart.
EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_RUNTIME_UNAVAILABLE = 2
EXIT_STORE_UNAVAILABLE = 3
EXIT_ACCESS_DENIED = 4


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _settings_from_args(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    overrides: dict = {}
    if getattr(args, "backend", None):
        overrides["backends"] = tuple(b.lower() for b in args.backend)
    if getattr(args, "debounce", None) is not None:
        overrides["debounce_s"] = max(0.0, args.debounce)
    if getattr(args, "sync_interval", None) is not None:
        overrides["sync_interval_s"] = max(1, args.sync_interval)
    if getattr(args, "api_port", None) is not None:
        overrides["api_port"] = args.api_port
    if getattr(args, "log_level", None):
        overrides["log_level"] = args.log_level.upper()
    return dataclasses.replace(settings, **overrides) if overrides else settings


async def _run(registrator: Registrator) -> None:
    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, main_task.cancel)
        except (NotImplementedError, RuntimeError):
            pass
    try:
        await registrator.run(api_server=create_server(registrator))
    except asyncio.CancelledError:
        logger.info("Shutting down")


async def _sync_once(registrator: Registrator) -> int:
    try:
        await registrator.check_connectivity()
        results = await registrator.sync_all()
    finally:
        await registrator.store.aclose()
    _print([dataclasses.asdict(r) for r in results])
    return EXIT_OK if all(r.ok for r in results) else 1


def _exit_code(exc: BaseException) -> int:
    if isinstance(exc, (AccessDenied, RuntimeAccessDenied)):
        return EXIT_ACCESS_DENIED
    if isinstance(exc, RuntimeUnavailable):
        return EXIT_RUNTIME_UNAVAILABLE
    return EXIT_STORE_UNAVAILABLE


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Register running Docker containers in etcd (SkyDNS, Vulcand)")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ... (default: $LOG_LEVEL or INFO)")
    sub = p.add_subparsers(dest="cmd")

    s_run = sub.add_parser("run", help="Watch Docker and keep etcd in sync (default)")
    s_run.add_argument("--backend", action="append", help="Backend to enable; repeat for several (default: $REGISTRATOR_BACKENDS)")
    s_run.add_argument("--debounce", type=float, default=None, help="Seconds a container must live before it is registered")
    s_run.add_argument("--sync-interval", type=int, default=None, help="Seconds between full syncs")
    s_run.add_argument("--api-port", type=int, default=None, help="Serve the status API on this port (0 disables)")

    s_sync = sub.add_parser("sync", help="Run one full sync and exit")
    s_sync.add_argument("--backend", action="append")

    s_status = sub.add_parser("status", help="Show what a running registrator has registered")
    s_status.add_argument("--api", default="http://127.0.0.1:8000", help="Status API base URL")

    args = p.parse_args(argv)
    cmd = args.cmd or "run"

    if cmd == "status":
        r = requests.get(f"{args.api.rstrip('/')}/backends", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    settings = _settings_from_args(args)
    setup_logging(settings.log_level)

    try:
        registrator = Registrator(settings)
    except ValueError as e:
        logger.error("%s", e)
        return EXIT_CONFIG

    try:
        if cmd == "sync":
            return asyncio.run(_sync_once(registrator))
        logger.info("Starting docker-etcd-registrator on %s", settings.hostname)
        asyncio.run(_run(registrator))
        return EXIT_OK
    except (RuntimeUnavailable, StoreUnavailable, AccessDenied) as e:
        logger.error("Error: %s", e)
        return _exit_code(e)


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
