"""Command line entry point.

Exit codes: 0 on normal shutdown, 1 on a configuration or metric
registration error, 2 when the listening port cannot be bound.
"""

import argparse
import asyncio
import logging
import socket
import sys
from collections.abc import Sequence

import uvicorn
from pydantic import ValidationError

from alertpipe.adapters.logging import configure_logging
from alertpipe.adapters.storage.ring_buffer import RingBufferLogStorage
from alertpipe.core.exceptions import ConfigError, RegistrationError
from alertpipe.runtime.application import Application, build_application
from alertpipe.settings import Settings

logger = logging.getLogger("alertpipe.cli")

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_BIND = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="alertpipe",
        description="Serve /metrics and evaluate alerting rules against it.",
    )
    parser.add_argument("--rules", dest="rules_file", help="alert rule file (YAML)")
    parser.add_argument(
        "--router-config", dest="router_config_file", help="router configuration (YAML)"
    )
    parser.add_argument("--host", help="address to listen on")
    parser.add_argument("--port", type=int, help="port to listen on")
    parser.add_argument("--scrape-interval", help="seconds or duration, e.g. 15s")
    parser.add_argument("--evaluation-interval", help="seconds or duration, e.g. 15s")
    parser.add_argument(
        "--target",
        dest="scrape_targets",
        action="append",
        metavar="URL",
        help="remote /metrics URL to scrape (repeatable)",
    )
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument(
        "--check",
        action="store_true",
        help="validate the rule and router files, then exit",
    )
    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    """Settings from the environment, overridden by explicit CLI flags."""
    overrides = {
        key: value
        for key, value in vars(args).items()
        if key != "check" and value is not None
    }
    return Settings(**overrides)


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind the listening socket before anything starts serving."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
    except OSError:
        sock.close()
        raise
    sock.setblocking(False)
    return sock


async def serve(application: Application, sock: socket.socket) -> None:
    """Run the HTTP server and the alerting loops until the server exits."""
    config = uvicorn.Config(
        application.asgi_app,
        log_config=None,
        lifespan="off",
        access_log=False,
    )
    server = uvicorn.Server(config)
    runtime = application.runtime
    runtime.start()
    try:
        await server.serve(sockets=[sock])
    finally:
        await runtime.stop(grace=application.settings.shutdown_grace)
        await application.aclose()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args)
    except ValidationError as exc:
        print(f"alertpipe: invalid settings:\n{exc}", file=sys.stderr)
        return EXIT_CONFIG

    storage = RingBufferLogStorage(max_size=settings.event_log_size)
    configure_logging(settings.log_level, storage)

    try:
        application = build_application(settings, log_storage=storage)
    except (ConfigError, RegistrationError) as exc:
        logger.error("Startup failed: %s", exc, extra={"error": str(exc)})
        return EXIT_CONFIG

    if args.check:
        asyncio.run(application.aclose())
        logger.info(
            "Configuration valid",
            extra={"rules": len(application.runtime.engine.rules)},
        )
        return EXIT_OK

    try:
        sock = bind_socket(settings.host, settings.port)
    except OSError as exc:
        logger.error(
            "Cannot bind %s:%s: %s",
            settings.host,
            settings.port,
            exc,
            extra={"host": settings.host, "port": settings.port, "error": str(exc)},
        )
        asyncio.run(application.aclose())
        return EXIT_BIND

    logger.info("Listening", extra={"host": settings.host, "port": settings.port})
    try:
        asyncio.run(serve(application, sock))
    except KeyboardInterrupt:
        pass
    finally:
        sock.close()
    return EXIT_OK
