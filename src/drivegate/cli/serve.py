"""CLI entrypoint serving local directories over the drive gateway."""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Optional, Sequence

import structlog

from ..common.observability import bind_listener, configure_logging, configure_tracing, instrument_fastapi_app
from ..common.settings import GatewaySettings
from ..drives.local import LocalDrive
from ..gateway.resolvers import StaticRegistry
from ..gateway.server import DriveServer


LOGGER = structlog.get_logger("drivegate.cli.serve")


def build_parser(settings: GatewaySettings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Serve local directories over HTTP with range support")
    parser.add_argument("root", nargs="?", default=settings.root, type=Path, help="Directory served as the default drive")
    parser.add_argument("--host", default=settings.host, help="Address to bind (default: all interfaces)")
    parser.add_argument("--port", type=int, default=settings.port, help="Preferred port")
    parser.add_argument(
        "--no-any-port",
        dest="any_port",
        action="store_false",
        default=settings.any_port,
        help="Fail instead of falling back to a free port",
    )
    parser.add_argument(
        "--alias",
        dest="aliases",
        action="append",
        default=list(settings.aliases),
        metavar="NAME=PATH",
        help="Serve PATH under ?drive=NAME (repeatable)",
    )
    parser.add_argument("--identifier-param", default=settings.identifier_param, help="Query parameter selecting a drive")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None, settings: Optional[GatewaySettings] = None) -> argparse.Namespace:
    return build_parser(settings or GatewaySettings()).parse_args(argv)


def build_registry(root: Optional[Path], aliases: dict[str, Path]) -> StaticRegistry:
    registry = StaticRegistry()
    if root is not None:
        registry.add(LocalDrive(root), default=True)
    for name, path in aliases.items():
        registry.add(LocalDrive(path), alias=name)
    if len(registry) == 0:
        registry.add(LocalDrive(Path.cwd()), default=True)
    return registry


async def run(argv: Optional[Sequence[str]] = None) -> None:
    settings = GatewaySettings()
    parser = build_parser(settings)
    args = parser.parse_args(argv)
    try:
        aliases = settings.model_copy(update={"aliases": args.aliases}).alias_map()
    except ValueError as exc:
        parser.error(str(exc))

    configure_logging("drivegate", settings.log_level)
    configure_tracing(
        "drivegate",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )

    registry = build_registry(args.root, aliases)
    server = DriveServer(
        registry,
        host=args.host,
        port=args.port,
        any_port=args.any_port,
        identifier_param=args.identifier_param,
        drain_timeout=settings.drain_timeout_seconds,
        metrics_path=settings.metrics_path,
        metrics_token=settings.metrics_token.get_secret_value() if settings.metrics_token else None,
    )
    instrument_fastapi_app(server.app, excluded_paths=(settings.metrics_path,))

    await server.open()
    bind_listener(args.host, server.port)
    LOGGER.info("serving", link=server.get_link("/"), aliases=sorted(aliases))
    try:
        await asyncio.Event().wait()
    finally:
        await server.close()


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
