from __future__ import annotations

from pathlib import Path

import pytest

pytest.importorskip("uvicorn")

import bird_cam.__main__ as cli
from bird_cam import app as app_module


def test_parser_defaults() -> None:
    args = cli.build_parser().parse_args([])
    assert args.config == Path("data/config.json")
    assert args.host == "0.0.0.0"
    assert args.port == 8080
    assert args.recordings is None
    assert args.log_level == "info"


def test_parser_rejects_unknown_log_level() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["--log-level", "chatty"])


def test_main_runs_uvicorn_with_built_app(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    calls: dict[str, object] = {}

    def fake_create_app(config, *, recordings_dir=None):
        calls["config"] = config
        calls["recordings"] = recordings_dir
        return "app"

    def fake_run(app, **kwargs):
        calls["app"] = app
        calls.update(kwargs)

    monkeypatch.setattr(app_module, "create_app", fake_create_app)
    monkeypatch.setattr(cli.uvicorn, "run", fake_run)

    code = cli.main(
        ["--config", str(tmp_path / "cfg.json"), "--port", "9000", "--recordings", str(tmp_path)]
    )

    assert code == 0
    assert calls["app"] == "app"
    assert calls["config"] == tmp_path / "cfg.json"
    assert calls["recordings"] == tmp_path
    assert calls["port"] == 9000
    assert calls["timeout_graceful_shutdown"] == 5


def test_main_reports_configuration_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_create_app(config, *, recordings_dir=None):
        raise RuntimeError("Failed to load configuration")

    monkeypatch.setattr(app_module, "create_app", broken_create_app)
    monkeypatch.setattr(cli.uvicorn, "run", lambda *a, **k: pytest.fail("server started"))

    assert cli.main([]) == 1
