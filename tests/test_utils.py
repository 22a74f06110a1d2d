"""Tests for winvm.utils module."""

from __future__ import annotations

import hashlib
from unittest.mock import MagicMock, patch

import pytest

from winvm.exceptions import InsufficientSpaceError, ManagerError
from winvm.utils import (
    check_disk_space,
    file_digest,
    has_graphical_session,
    host_resources,
    log,
    privileged,
    remove_path,
    retry,
    run,
)

GIB = 1024**3


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_error_goes_to_stderr(self, capsys):
        log("ERROR", "broken")
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "[ERROR]" in captured.err
        assert "broken" in captured.err

    def test_debug_suppressed_by_default(self, capsys):
        log("DEBUG", "should not appear")
        captured = capsys.readouterr()
        assert captured.out == ""


class TestGraphicalSession:
    def test_none(self, clean_env):
        assert has_graphical_session() is False

    def test_x11(self, clean_env, monkeypatch):
        monkeypatch.setenv("DISPLAY", ":0")
        assert has_graphical_session() is True

    def test_wayland(self, clean_env, monkeypatch):
        monkeypatch.setenv("WAYLAND_DISPLAY", "wayland-0")
        assert has_graphical_session() is True


class TestCheckDiskSpace:
    def test_enough_space(self, tmp_path):
        with patch("winvm.utils.get_available_disk_space", return_value=61 * GIB):
            check_disk_space(tmp_path, 60 * GIB)

    def test_exactly_required_is_not_enough(self, tmp_path):
        with patch("winvm.utils.get_available_disk_space", return_value=60 * GIB):
            with pytest.raises(InsufficientSpaceError) as exc:
                check_disk_space(tmp_path, 60 * GIB)
        assert "60 GB is needed, but you only have 60 GB" in str(exc.value)
        assert exc.value.required == 60 * GIB

    def test_reclaimable_space_counts(self, tmp_path):
        with patch("winvm.utils.get_available_disk_space", return_value=50 * GIB):
            check_disk_space(tmp_path, 60 * GIB, reclaimable=20 * GIB)


class TestRetry:
    def test_returns_successful_attempt(self):
        action = MagicMock(side_effect=[False, False, True])
        failures = []
        with patch("winvm.utils.time.sleep") as mock_sleep:
            assert retry(action, 5, 1.5, ManagerError("never"), on_failure=failures.append) == 3
        assert failures == [1, 2]
        assert mock_sleep.call_count == 2
        mock_sleep.assert_called_with(1.5)

    def test_raises_after_exhaustion_without_trailing_sleep(self):
        action = MagicMock(return_value=False)
        with patch("winvm.utils.time.sleep") as mock_sleep:
            with pytest.raises(ManagerError, match="gave up"):
                retry(action, 3, 1.0, ManagerError("gave up"))
        assert action.call_count == 3
        assert mock_sleep.call_count == 2


class TestPrivileged:
    def test_root_runs_directly(self):
        with patch("winvm.utils.os.geteuid", return_value=0):
            assert privileged(["mount", "a"]) == ["mount", "a"]

    def test_user_gets_sudo(self):
        with patch("winvm.utils.os.geteuid", return_value=1000):
            assert privileged(["mount", "a"]) == ["sudo", "mount", "a"]


class TestHostResources:
    def test_whole_gib_floor(self):
        info = {"cpu_count": 12, "mem_total": 15 * GIB + 900 * 1024**2}
        with patch("winvm.utils.get_host_info", return_value=info):
            assert host_resources() == (12, 15)


class TestFiles:
    def test_file_digest(self, tmp_path):
        path = tmp_path / "blob"
        path.write_bytes(b"hello")
        assert file_digest(path) == hashlib.sha256(b"hello").hexdigest()
        assert file_digest(path, "sha1") == hashlib.sha1(b"hello").hexdigest()

    def test_remove_path_handles_files_dirs_and_absent(self, tmp_path):
        (tmp_path / "f").write_text("x")
        (tmp_path / "d").mkdir()
        (tmp_path / "d" / "inner").write_text("y")
        remove_path(tmp_path / "f")
        remove_path(tmp_path / "d")
        remove_path(tmp_path / "missing")
        assert list(tmp_path.iterdir()) == []


def test_run_passes_through_to_subprocess():
    completed = MagicMock(returncode=0)
    with patch("winvm.utils.subprocess.run", return_value=completed) as mock_run:
        assert run(["true"], check=False, capture_output=True) is completed
    mock_run.assert_called_once_with(["true"], check=False, text=True, capture_output=True)
