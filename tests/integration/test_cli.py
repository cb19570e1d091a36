import asyncio
import json

import pytest

from sensor_recon.cli.recon import async_main, format_result, parse_args
from sensor_recon.core.infrastructure.settings import get_settings


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "cli.sqlite3"))
    monkeypatch.setenv("OBJECT_STORE_ROOT", str(tmp_path / "objects"))
    monkeypatch.setenv("SCHEDULER_AUTOSTART", "false")
    get_settings(reload=True)
    yield tmp_path
    monkeypatch.undo()
    get_settings(reload=True)


def test_parse_args():
    args = parse_args(["--format", "text", "reassign-location", "--from", "12", "--to", "34", "--batch-limit", "50"])
    assert (args.command, args.from_location, args.to_location, args.batch_limit) == (
        "reassign-location", "12", "34", 50,
    )
    with pytest.raises(SystemExit):
        parse_args(["sweep", "--window", "nightly"])


def test_format_result():
    assert format_result({"updated": 3}, "text") == "updated: 3"
    assert json.loads(format_result({"updated": 3}, "json")) == {"updated": 3}


def test_import_then_open_box(cli_env, capsys):
    devices = cli_env / "devices.json"
    devices.write_text(
        json.dumps({"devices": [
            {"id": "DEV001", "teamId": "team-1", "boxNumber": "7", "boxOpened": False},
            {"id": "DEV002", "teamId": "team-1", "boxNumber": "7", "boxOpened": False},
        ]}),
        encoding="utf-8",
    )

    args = parse_args(["--format", "text", "import-devices", str(devices), "--actor", "admin"])
    code = asyncio.run(async_main(args))
    assert code == 0
    out = capsys.readouterr().out
    assert "created: 2" in out
    assert "received: 2" in out

    code = asyncio.run(async_main(parse_args(["--format", "text", "open-box", "--box", "7", "--team-id", "team-1"])))
    assert code == 0
    assert "opened: 2" in capsys.readouterr().out

    # already opened: domain error, exit code 1
    code = asyncio.run(async_main(parse_args(["open-box", "--box", "7", "--team-id", "team-1"])))
    assert code == 1
    assert "No Devices Found" in capsys.readouterr().err


def test_sweep_installer_window_requires_installer(cli_env, capsys):
    code = asyncio.run(async_main(parse_args(["sweep", "--window", "installer"])))
    assert code == 1
    assert "--installer-id" in capsys.readouterr().err
