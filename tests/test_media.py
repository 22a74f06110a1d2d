"""Tests for winvm.media module."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from winvm import media
from winvm.exceptions import ExternalToolError, MissingArtifactError
from winvm.models import VMConfig

CATALOG = {"German": {"locale": "de-DE", "input_locale": "0407:00000407"}}
TEMPLATE = '<unattend>\n  <settings pass="windowsPE">\n  </settings>\n</unattend>\n'


def ok(**kwargs):
    return MagicMock(returncode=0, stderr="", **kwargs)


class TestApplyLanguage:
    def test_inserts_locale_block_after_windows_pe_tag(self):
        text = media.apply_language(TEMPLATE, "German", CATALOG)
        tag_at = text.index('<settings pass="windowsPE">')
        block_at = text.index("Microsoft-Windows-International-Core-WinPE")
        assert block_at > tag_at
        assert "<UILanguage>de-DE</UILanguage>" in text
        assert "<InputLocale>0407:00000407</InputLocale>" in text

    def test_applied_once(self):
        once = media.apply_language(TEMPLATE, "German", CATALOG)
        assert media.apply_language(once, "German", CATALOG) == once

    def test_unknown_language_left_alone(self):
        with patch("winvm.media.log") as mock_log:
            assert media.apply_language(TEMPLATE, "Klingon", CATALOG) == TEMPLATE
        assert mock_log.call_args[0][0] == "WARN"


class TestApplyCredentials:
    def test_replaces_placeholders(self):
        text = "<Name>Win11ARM</Name><Value>win11arm</Value>"
        assert media.apply_credentials(text, "alice", "s3cret") == "<Name>alice</Name><Value>s3cret</Value>"

    def test_password_containing_username_placeholder_is_rewritten(self):
        # Plain substitution order: password first, then username
        assert media.apply_credentials("<Value>win11arm</Value>", "bob", "Win11ARM!") == "<Value>bob!</Value>"


class TestWriteAnswerFiles:
    def test_renders_bundled_templates(self, tmp_path, default_vm_config):
        cfg = VMConfig(
            workspace=default_vm_config.workspace,
            username="alice",
            password="s3cret",
            disk_size_gb=40,
            rdp_port=3389,
            language="English (United States)",
        )
        volume = tmp_path / "volume"
        media.write_answer_files(volume, cfg)
        xml = (volume / "autounattend.xml").read_text()
        assert "<Name>alice</Name>" in xml
        assert "<Username>alice</Username>" in xml
        assert "<Value>s3cret</Value>" in xml
        assert "win11arm" not in xml
        assert "Win11ARM" not in xml
        assert "<UILanguage>en-US</UILanguage>" in xml
        assert (volume / "firstlogin.ps1").is_file()


def make_driver_tree(root: Path) -> None:
    for rel in ("viostor/w11/ARM64", "viostor/w10/ARM64", "NetKVM/w11/ARM64", "NetKVM/w11/amd64"):
        (root / rel).mkdir(parents=True)
        (root / rel / "driver.inf").write_text(rel)
    (root / "guest-agent").mkdir()
    (root / "guest-agent" / "qemu-ga-x86_64.msi").write_bytes(b"msi")
    (root / "cert").mkdir()
    (root / "cert" / "virtio.cer").write_bytes(b"cer")


class TestDrivers:
    def test_find_driver_dirs_filters_arch_and_os(self, tmp_path):
        make_driver_tree(tmp_path)
        found = media.find_driver_dirs(tmp_path)
        assert found == {
            "NetKVM": [tmp_path / "NetKVM/w11/ARM64"],
            "viostor": [tmp_path / "viostor/w11/ARM64"],
        }

    def test_copy_drivers(self, tmp_path):
        source = tmp_path / "mnt"
        volume = tmp_path / "volume"
        make_driver_tree(source)
        volume.mkdir()
        assert media.copy_drivers(source, volume) == ["NetKVM", "viostor"]
        assert (volume / "viostor" / "driver.inf").read_text() == "viostor/w11/ARM64"
        assert (volume / "NetKVM" / "driver.inf").read_text() == "NetKVM/w11/ARM64"
        assert (volume / "guest-agent" / "qemu-ga-x86_64.msi").read_bytes() == b"msi"
        assert (volume / "cert" / "virtio.cer").read_bytes() == b"cer"

    def test_unmount_retries_while_busy(self, tmp_path):
        results = [MagicMock(returncode=32), MagicMock(returncode=32), ok()]
        with patch("winvm.media.run", side_effect=results) as mock_run, patch("winvm.utils.time.sleep"):
            media.unmount(tmp_path, attempts=5, delay=0)
        assert mock_run.call_count == 3
        assert mock_run.call_args[0][0][-2:] == ["umount", str(tmp_path)]

    def test_unmount_gives_up(self, tmp_path):
        with patch("winvm.media.run", return_value=MagicMock(returncode=32)), patch("winvm.utils.time.sleep"):
            with pytest.raises(ExternalToolError, match="after 5 attempts"):
                media.unmount(tmp_path)

    def test_extract_unmounts_after_copy_failure(self, tmp_path):
        with patch("winvm.media.run", return_value=ok()), patch(
            "winvm.media.copy_drivers", side_effect=media.ManagerError("copy failed")
        ), patch("winvm.media.unmount") as mock_unmount, patch(
            "winvm.media.tempfile.mkdtemp", return_value=str(tmp_path / "mnt")
        ):
            (tmp_path / "mnt").mkdir()
            with pytest.raises(media.ManagerError, match="copy failed"):
                media.extract_drivers(tmp_path / "virtio-win.iso", tmp_path / "volume")
        mock_unmount.assert_called_once_with(tmp_path / "mnt")
        assert not (tmp_path / "mnt").exists()

    def test_extract_mount_failure(self, tmp_path):
        failed = MagicMock(returncode=32, stderr="wrong fs type")
        with patch("winvm.media.run", return_value=failed), patch("winvm.media.unmount") as mock_unmount:
            with pytest.raises(ExternalToolError, match="Failed to mount virtio-win.iso"):
                media.extract_drivers(tmp_path / "virtio-win.iso", tmp_path / "volume")
        mock_unmount.assert_not_called()


class TestSynthesize:
    def test_builds_volume_artifact(self, workspace, default_vm_config):
        with patch("winvm.media.extract_drivers") as mock_extract:
            path = media.synthesize(workspace, workspace.path("driver-source-image"), default_vm_config)
        assert path == workspace.path("driver-answer-volume")
        assert (path / "autounattend.xml").is_file()
        staged_volume = mock_extract.call_args[0][1]
        assert staged_volume != path

    def test_failure_leaves_no_volume(self, workspace, default_vm_config):
        with patch("winvm.media.extract_drivers", side_effect=ExternalToolError("mount", "nope")):
            with pytest.raises(ExternalToolError):
                media.synthesize(workspace, workspace.path("driver-source-image"), default_vm_config)
        assert list(workspace.root.iterdir()) == []


class TestBuildAnswerImage:
    def test_requires_volume(self, workspace):
        with pytest.raises(MissingArtifactError) as exc:
            media.build_answer_image(workspace)
        assert exc.value.artifact == "driver-answer-volume"

    def test_runs_mkisofs(self, workspace):
        workspace.path("driver-answer-volume").mkdir()

        def fake_run(cmd, check=True, **kwargs):
            Path(cmd[-2]).write_bytes(b"CD001")
            return ok()

        with patch("winvm.media.run", side_effect=fake_run) as mock_run:
            path = media.build_answer_image(workspace)
        cmd = mock_run.call_args[0][0]
        assert cmd[:8] == ["mkisofs", "-quiet", "-l", "-J", "-r", "-allow-lowercase", "-allow-multidot", "-o"]
        assert cmd[-1] == f"{workspace.path('driver-answer-volume')}/"
        assert path.read_bytes() == b"CD001"

    def test_failure_leaves_no_image(self, workspace):
        workspace.path("driver-answer-volume").mkdir()
        with patch("winvm.media.run", return_value=MagicMock(returncode=1, stderr="bad")):
            with pytest.raises(ExternalToolError, match="Failed to create unattended.iso"):
                media.build_answer_image(workspace)
        assert sorted(p.name for p in workspace.root.iterdir()) == ["unattended"]

    def test_missing_tool(self, workspace):
        workspace.path("driver-answer-volume").mkdir()
        with patch("winvm.media.run", side_effect=FileNotFoundError):
            with pytest.raises(ExternalToolError, match="not found"):
                media.build_answer_image(workspace)
