import asyncio
from pathlib import Path

import pytest

from mdm_dispatcher import cli
from mdm_dispatcher.config import ENV_OVERRIDES
from mdm_dispatcher.core.models import CommandStatus
from mdm_dispatcher.core.protocols import GatewayRejected
from mdm_dispatcher.dispatcher import SHUTDOWN_REASON, CommandValidationError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for variable in ENV_OVERRIDES:
        monkeypatch.delenv(variable, raising=False)
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)


def _write_config(tmp_path: Path, *, with_key: bool = True) -> Path:
    key_path = tmp_path / "AuthKey.p8"
    if with_key:
        key_path.write_text("key", encoding="utf-8")
    config_path = tmp_path / "mdm-dispatcher.cfg"
    config_path.write_text(
        f"""
[apns]
team_id = TEAM123456
key_id = KEY7890123
auth_key_path = {key_path}
topic = com.apple.mgmt.test

[logging]
path =
""".strip()
        + "\n",
        encoding="utf-8",
    )
    return config_path


def test_parser_reads_send_arguments():
    args = cli.build_parser().parse_args(
        ["send", "--token", "TOK1", "--payload", '{"MessageType": "DeviceLock"}']
    )

    assert args.command == "send"
    assert args.token == "TOK1"
    assert args.timeout == 60.0


def test_show_config_prints_sections(tmp_path: Path, capsys):
    config_path = _write_config(tmp_path)

    exit_code = cli.main(["--config", str(config_path), "show-config"])

    assert exit_code == 0
    output = capsys.readouterr().out
    assert "[apns]" in output
    assert "team_id = TEAM123456" in output


def test_start_refuses_incomplete_configuration(tmp_path: Path):
    config_path = _write_config(tmp_path, with_key=False)

    assert cli.main(["--config", str(config_path), "start"]) == 1


def test_send_rejects_invalid_json(tmp_path: Path):
    config_path = _write_config(tmp_path)

    exit_code = cli.main(
        ["--config", str(config_path), "send", "--token", "TOK1", "--payload", "{oops"]
    )

    assert exit_code == 1


def test_devices_lists_udids(tmp_path: Path, monkeypatch, capsys):
    async def fake_list_devices():
        return ["00008030-000A", "00008030-000B"]

    monkeypatch.setattr(cli, "list_devices", fake_list_devices)

    exit_code = cli.main(["--config", str(tmp_path / "missing.cfg"), "devices"])

    assert exit_code == 0
    assert capsys.readouterr().out.splitlines() == ["00008030-000A", "00008030-000B"]


@pytest.mark.asyncio
async def test_send_command_returns_result(make_config, fake_gateway):
    gateway = fake_gateway()

    result = await cli.send_command(
        make_config(), "TOK1", {"CommandUUID": "C-1"}, timeout=2.0, gateway=gateway
    )

    assert result.command_uuid == "C-1"
    assert result.status == CommandStatus.ACCEPTED
    assert gateway.closed is True


@pytest.mark.asyncio
async def test_send_command_reports_rejection(make_config, fake_gateway):
    gateway = fake_gateway(lambda token, index: GatewayRejected(reason="BadTopic"))

    result = await cli.send_command(
        make_config(), "TOK1", {"CommandUUID": "C-2"}, timeout=2.0, gateway=gateway
    )

    assert result.status == CommandStatus.REJECTED
    assert result.rejection_reason == "BadTopic"


@pytest.mark.asyncio
async def test_send_command_times_out_as_failed(make_config, fake_gateway):
    gateway = fake_gateway(gate=asyncio.Event())

    result = await cli.send_command(
        make_config(shutdown_grace_seconds=0.05),
        "TOK1",
        {"CommandUUID": "C-3"},
        timeout=0.05,
        gateway=gateway,
    )

    assert result.status == CommandStatus.FAILED_TO_SEND
    assert result.rejection_reason == SHUTDOWN_REASON
    assert gateway.closed is True


@pytest.mark.asyncio
async def test_send_command_timeout_skips_shutdown_grace(make_config, fake_gateway):
    gateway = fake_gateway(gate=asyncio.Event())
    config = make_config(shutdown_grace_seconds=30.0)

    result = await asyncio.wait_for(
        cli.send_command(
            config, "TOK1", {"CommandUUID": "C-4"}, timeout=0.05, gateway=gateway
        ),
        timeout=5.0,
    )

    assert result.status == CommandStatus.FAILED_TO_SEND
    assert result.rejection_reason == SHUTDOWN_REASON
    assert gateway.closed is True


@pytest.mark.asyncio
async def test_send_command_validates_input(make_config, fake_gateway):
    gateway = fake_gateway()

    with pytest.raises(CommandValidationError):
        await cli.send_command(make_config(), "", {"MessageType": "DeviceLock"}, gateway=gateway)

    assert gateway.calls == []
    assert gateway.closed is True


def test_version_flag(capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--version"])

    assert excinfo.value.code == 0
    assert "mdm-dispatcher 0.3.0" in capsys.readouterr().out
