import subprocess
import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parents[1]))
import debug_sandbox_launcher
from debug_sandbox_launcher import (
    RuntimeUnavailable,
    check_runtime_version,
    main,
    parse_runtime_version,
)


def test_dry_run_prints_command(capsys):
    assert main(["--dry-run", "--runtime", "podman", "--log-level", "info", "demo/main.php"]) == 0

    out = capsys.readouterr().out
    assert "run \\\n" in out
    assert "LOG_LEVEL=info" in out
    assert "php-debugger \\\n  demo/main.php" in out


def test_unsupported_extension_exit_code(capsys):
    assert main(["--dry-run", "demo/main.rs"]) == 2
    assert capsys.readouterr().out == ""


def test_run_prints_payload(capsys):
    async def _fake_run_session(request, **kwargs):
        assert request.main_file_path == "demo/main.py"
        assert kwargs["result_timeout"] == 4.0
        return '{"ok":true}'

    with patch.object(debug_sandbox_launcher, "run_session", _fake_run_session):
        assert main(["--timeout", "4", "demo/main.py"]) == 0

    assert capsys.readouterr().out.strip() == '{"ok":true}'


def test_process_error_exit_code():
    async def _fake_run_session(request, **kwargs):
        raise debug_sandbox_launcher.ProcessError("boom", command="docker")

    with patch.object(debug_sandbox_launcher, "run_session", _fake_run_session):
        assert main(["demo/main.py"]) == 1


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Docker version 24.0.7, build afdd53b", "24.0.7"),
        ("Docker version 17.03.1-ce, build c6d412e", "17.03.1"),
        ("podman version 4.9.3", "4.9.3"),
        ("garbage", None),
    ],
)
def test_parse_runtime_version(text, expected):
    assert parse_runtime_version(text) == expected


def _completed(stdout, returncode=0, stderr=""):
    return SimpleNamespace(stdout=stdout, stderr=stderr, returncode=returncode)


def test_check_runtime_version_accepts_recent_docker():
    with patch.object(subprocess, "run", return_value=_completed("Docker version 24.0.7, build x")):
        assert check_runtime_version("docker") == "24.0.7"


def test_check_runtime_version_rejects_docker_without_mount():
    with patch.object(subprocess, "run", return_value=_completed("Docker version 17.03.1-ce")):
        with pytest.raises(RuntimeUnavailable, match="too old"):
            check_runtime_version("/usr/bin/docker")


def test_check_runtime_version_reports_missing_binary():
    with patch.object(subprocess, "run", side_effect=FileNotFoundError("docker")):
        with pytest.raises(RuntimeUnavailable, match="unavailable"):
            check_runtime_version("docker")


def test_check_runtime_version_reports_failure_status():
    with patch.object(subprocess, "run", return_value=_completed("", 1, "daemon down")):
        with pytest.raises(RuntimeUnavailable, match="daemon down"):
            check_runtime_version("podman")


def test_detect_runtime_prefers_requested(monkeypatch):
    monkeypatch.setattr(debug_sandbox_launcher.shutil, "which", lambda name: f"/usr/bin/{name}")

    assert debug_sandbox_launcher.detect_runtime("podman") == "podman"


def test_detect_runtime_none_available(monkeypatch):
    monkeypatch.setattr(debug_sandbox_launcher.shutil, "which", lambda name: None)

    assert debug_sandbox_launcher.detect_runtime() is None
