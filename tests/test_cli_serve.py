from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from drivegate.cli import serve as serve_cli
from drivegate.common.settings import GatewaySettings
from drivegate.drives.local import LocalDrive


def test_parse_args_defaults_come_from_settings(tmp_path) -> None:
    settings = GatewaySettings(port=1234, any_port=True, aliases=["docs=/srv/docs"])
    args = serve_cli.parse_args([], settings)
    assert args.root is None
    assert args.port == 1234
    assert args.any_port is True
    assert args.aliases == ["docs=/srv/docs"]
    assert args.identifier_param == "drive"


def test_parse_args_overrides(tmp_path) -> None:
    settings = GatewaySettings()
    args = serve_cli.parse_args(
        [str(tmp_path), "--host", "127.0.0.1", "--port", "0", "--no-any-port", "--alias", "a=/x", "--alias", "b=/y"],
        settings,
    )
    assert args.root == tmp_path
    assert args.host == "127.0.0.1"
    assert args.port == 0
    assert args.any_port is False
    assert args.aliases == ["a=/x", "b=/y"]


def test_build_registry_serves_root_and_aliases(tmp_path) -> None:
    docs = tmp_path / "docs"
    docs.mkdir()
    registry = serve_cli.build_registry(tmp_path, {"docs": docs})
    default = registry.get(None)
    assert isinstance(default, LocalDrive)
    assert default.root == tmp_path
    assert registry.get("docs").root == docs


def test_build_registry_falls_back_to_cwd(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    registry = serve_cli.build_registry(None, {})
    assert registry.get(None).root == Path.cwd()


@pytest.mark.asyncio
async def test_run_serves_until_cancelled(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    opened = []

    class FakeServer:
        port = 0

        def __init__(self, registry, **kwargs) -> None:
            self.registry = registry
            self.kwargs = kwargs
            self.app = object()
            self.closed = False
            self.is_open = False
            opened.append(self)

        async def open(self) -> None:
            self.is_open = True

        def get_link(self, path: str) -> str:
            return "http://localhost/"

        async def close(self) -> None:
            self.closed = True

    monkeypatch.setattr(serve_cli, "DriveServer", FakeServer)
    monkeypatch.setattr(serve_cli, "instrument_fastapi_app", lambda app, **kwargs: None)
    monkeypatch.setattr(serve_cli, "configure_tracing", lambda *args, **kwargs: None)

    task = asyncio.ensure_future(serve_cli.run([str(tmp_path), "--port", "0"]))
    for _ in range(100):
        if opened and opened[0].is_open:
            break
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    server = opened[0]
    assert server.kwargs["port"] == 0
    assert server.registry.get(None).root == tmp_path
    assert server.closed


@pytest.mark.asyncio
async def test_malformed_alias_is_a_usage_error(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DRIVEGATE_ALIASES", raising=False)
    with pytest.raises(SystemExit) as exc:
        await serve_cli.run(["--alias", "nopath"])
    assert exc.value.code == 2
    assert "invalid alias 'nopath'" in capsys.readouterr().err
