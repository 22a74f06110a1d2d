"""Tests for winvm.artifacts module."""

from __future__ import annotations

import pytest

from winvm.artifacts import ARTIFACTS, Workspace
from winvm.exceptions import MissingArtifactError


class TestPaths:
    def test_names_map_to_files(self, tmp_path):
        ws = Workspace(tmp_path)
        assert ws.path("installer-image") == tmp_path / "installer.iso"
        assert ws.path("disk-image") == tmp_path / "disk.qcow2"
        assert ws.path("driver-answer-volume") == tmp_path / "unattended"
        assert ws.path("config-record") == tmp_path / "vm-config.txt"

    def test_unknown_artifact(self, tmp_path):
        with pytest.raises(KeyError, match="Unknown artifact"):
            Workspace(tmp_path).path("floppy")

    def test_every_artifact_has_distinct_filename(self):
        names = [spec.filename for spec in ARTIFACTS.values()]
        assert len(names) == len(set(names))


class TestExists:
    def test_file_artifact(self, tmp_path):
        ws = Workspace(tmp_path)
        assert ws.exists("disk-image") is False
        (tmp_path / "disk.qcow2").write_bytes(b"qcow")
        assert ws.exists("disk-image") is True

    def test_directory_artifact_requires_directory(self, tmp_path):
        ws = Workspace(tmp_path)
        (tmp_path / "unattended").write_text("not a directory")
        assert ws.exists("driver-answer-volume") is False

    def test_file_artifact_ignores_directory(self, tmp_path):
        ws = Workspace(tmp_path)
        (tmp_path / "installer.iso").mkdir()
        assert ws.exists("installer-image") is False


class TestRequire:
    def test_require_root_missing(self, tmp_path):
        ws = Workspace(tmp_path / "absent")
        with pytest.raises(MissingArtifactError) as exc:
            ws.require_root("Run create.")
        assert exc.value.artifact == "workspace"
        assert "Run create." in str(exc.value)

    def test_require_present_returns_path(self, tmp_path):
        (tmp_path / "installer.iso").write_bytes(b"iso")
        assert Workspace(tmp_path).require_present("installer-image") == tmp_path / "installer.iso"

    def test_require_present_missing(self, tmp_path):
        with pytest.raises(MissingArtifactError) as exc:
            Workspace(tmp_path).require_present("disk-image", "Run prepare.")
        assert exc.value.artifact == "disk-image"
        assert exc.value.path == tmp_path / "disk.qcow2"


class TestWrite:
    def test_file_written_atomically(self, tmp_path):
        ws = Workspace(tmp_path)
        seen = []

        def producer(staging):
            seen.append(staging)
            assert staging.parent == tmp_path
            assert staging.name.startswith(".disk.qcow2.partial-")
            assert not ws.exists("disk-image")
            staging.write_bytes(b"data")

        final = ws.write("disk-image", producer)
        assert final.read_bytes() == b"data"
        assert not seen[0].exists()
        assert sorted(p.name for p in tmp_path.iterdir()) == ["disk.qcow2"]

    def test_failure_keeps_existing_and_cleans_staging(self, tmp_path):
        ws = Workspace(tmp_path)
        (tmp_path / "installer.iso").write_bytes(b"old")

        def producer(staging):
            staging.write_bytes(b"half")
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            ws.write("installer-image", producer)
        assert (tmp_path / "installer.iso").read_bytes() == b"old"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["installer.iso"]

    def test_interrupt_cleans_staging(self, tmp_path):
        ws = Workspace(tmp_path)

        def producer(staging):
            raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            ws.write("disk-image", producer)
        assert list(tmp_path.iterdir()) == []

    def test_directory_artifact_replaces_previous_tree(self, tmp_path):
        ws = Workspace(tmp_path)
        old = tmp_path / "unattended"
        old.mkdir()
        (old / "stale.txt").write_text("stale")

        def producer(staging):
            assert staging.is_dir()
            (staging / "autounattend.xml").write_text("<unattend/>")

        ws.write("driver-answer-volume", producer)
        assert sorted(p.name for p in old.iterdir()) == ["autounattend.xml"]
        assert sorted(p.name for p in tmp_path.iterdir()) == ["unattended"]


class TestRemove:
    def test_remove_file_and_directory(self, tmp_path):
        ws = Workspace(tmp_path)
        (tmp_path / "disk.qcow2").write_bytes(b"x")
        (tmp_path / "unattended").mkdir()
        (tmp_path / "unattended" / "a").write_text("a")
        ws.remove("disk-image")
        ws.remove("driver-answer-volume")
        assert list(tmp_path.iterdir()) == []

    def test_remove_absent_is_noop(self, tmp_path):
        Workspace(tmp_path).remove("pid-record")
