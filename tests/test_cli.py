from unittest.mock import patch

import pytest

from speedshift.cli import main


def test_cli_help_displays():
    """Test --help works without errors."""
    with patch("sys.argv", ["speedshift", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_serve_help():
    """Test serve subcommand help."""
    with patch("sys.argv", ["speedshift", "serve", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_check_command_ffmpeg_found(capsys):
    """Test check command when ffmpeg is found."""
    with patch("sys.argv", ["speedshift", "check"]):
        with patch("speedshift.ffmpeg_runner.check_ffmpeg", return_value=True):
            main()
            captured = capsys.readouterr()
            assert "ffmpeg found" in captured.out.lower()


def test_cli_check_command_ffmpeg_not_found(capsys):
    """Test check command when ffmpeg is not found."""
    with patch("sys.argv", ["speedshift", "check"]):
        with patch("speedshift.ffmpeg_runner.check_ffmpeg", return_value=False):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code == 1
            captured = capsys.readouterr()
            assert "not found" in captured.out.lower()


def test_cli_plan_slow_speed(capsys):
    with patch("sys.argv", ["speedshift", "plan", "0.3"]):
        main()
    out = capsys.readouterr().out
    assert "Speed:   0.3x" in out
    assert "Steps:   0.5, 0.6" in out
    assert "atempo=0.5,atempo=" in out


def test_cli_plan_invalid_speed(capsys):
    with patch("sys.argv", ["speedshift", "plan", "9"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
    assert exc_info.value.code == 2
    assert "between 0.25 and 4.0" in capsys.readouterr().err


def test_cli_serve_runs_uvicorn(tmp_path):
    with patch("sys.argv", ["speedshift", "serve", "-p", "8123", "-d", str(tmp_path / "files")]):
        with patch("uvicorn.run") as run:
            main()
    app = run.call_args.args[0]
    assert run.call_args.kwargs["port"] == 8123
    assert app.state.config.storage.directory == str(tmp_path / "files")


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    with patch("sys.argv", ["speedshift"]):
        main()
        captured = capsys.readouterr()
        assert "usage:" in captured.out.lower()
