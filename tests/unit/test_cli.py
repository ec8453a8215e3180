# tests/unit/test_cli.py

from __future__ import annotations
import sys
from pathlib import Path

import yaml
from typer.testing import CliRunner

# Ensure "src" is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from parley.bootstrap import build_app
from parley.cli import HELP_TEXT, ChatRepl, app  # Typer app


def _config(tmp_path: Path, stream: bool = True) -> Path:
    cfg = {
        "server": {"host": "127.0.0.1", "port": 8000},
        "runtime": {"stream": stream},
        "logging": {"level": "ERROR"},
        "secrets": {"method": "env", "mapping": {}},
        "providers": {"echo": {"type": "echo", "token_delay": 0.0}},
        "models": [{"id": "echo", "provider": "echo", "model_id": "echo-lorem"}],
    }
    p = tmp_path / "config" / "default.yaml"
    p.parent.mkdir(parents=True)
    p.write_text(yaml.safe_dump(cfg), encoding="utf-8")
    return p


def test_cli_echo_roundtrip_streaming(tmp_path: Path):
    runner = CliRunner()
    # Provide a minimal dialogue: one message, then exit
    result = runner.invoke(app, ["chat", "--config", str(_config(tmp_path))], input="hello\n/exit\n",
                           catch_exceptions=False)

    assert result.exit_code == 0
    # Echo provider returns a fixed lorem ipsum
    assert "Lorem ipsum dolor" in result.output
    assert "Bye." in result.output


def test_cli_non_streaming_with_commands(tmp_path: Path):
    runner = CliRunner()
    result = runner.invoke(
        app,
        ["chat", "-c", str(_config(tmp_path, stream=False))],
        input="/regen\n/help\n/id\nhello\n/regen\n/quit\n",
        catch_exceptions=False,
    )

    assert result.exit_code == 0
    assert "Nothing to regenerate yet." in result.output
    assert HELP_TEXT in result.output
    assert "(no conversation yet)" in result.output
    assert result.output.count("Lorem ipsum dolor") == 2


def test_cli_unknown_model_reports_error(tmp_path: Path):
    runner = CliRunner()
    result = runner.invoke(app, ["chat", "-c", str(_config(tmp_path)), "-m", "ghost"], input="hi\n",
                           catch_exceptions=False)
    # EOF ends the session cleanly
    assert result.exit_code == 0
    assert "error:" in result.output
    assert "ghost" in result.output


def test_stop_for_missing_message_is_reported_not_raised(tmp_path: Path, capsys):
    ctx = build_app(_config(tmp_path))
    repl = ChatRepl(ctx["service"], "echo", stream=True)
    try:
        # Ctrl+C schedules this as a fire-and-forget task; it must not raise.
        repl._run(repl._stop("deleted-message"))
    finally:
        repl.close()
    assert "stop failed" in capsys.readouterr().out
