"""Shared test fixtures."""

from __future__ import annotations

import pytest

from winvm.artifacts import Workspace
from winvm.confirm import FixedConfirmer
from winvm.models import VMConfig


@pytest.fixture
def default_vm_config(tmp_path) -> VMConfig:
    """Return a VMConfig pointing at a fresh workspace under tmp_path."""
    return VMConfig(
        workspace=tmp_path / "vm",
        username="win11arm",
        password="win11arm",
        disk_size_gb=40,
        rdp_port=3389,
        language="English (United States)",
    )


@pytest.fixture
def workspace(default_vm_config) -> Workspace:
    """An existing, empty workspace directory."""
    default_vm_config.workspace.mkdir(parents=True)
    return Workspace(default_vm_config.workspace)


@pytest.fixture
def answers():
    """Confirmer stand-in that records prompts; answers yes unless .answer is changed."""

    class _Recorder(FixedConfirmer):
        def __init__(self) -> None:
            super().__init__(True)
            self.prompts = []

        def __call__(self, prompt: str, default: bool = True) -> bool:
            self.prompts.append(prompt)
            return self.answer

    return _Recorder()


@pytest.fixture
def clean_env(monkeypatch):
    """Remove display and verbosity variables that change behaviour."""
    for var in ("DISPLAY", "WAYLAND_DISPLAY", "LOG_VERBOSE", "WINVM_ASSUME"):
        monkeypatch.delenv(var, raising=False)
