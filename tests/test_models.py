"""Tests for winvm.models module."""

from __future__ import annotations

import dataclasses

import pytest

from winvm.models import PortForward, ResourceAllocation


def test_disk_size_bytes(default_vm_config):
    assert default_vm_config.disk_size_bytes == 40 * 1024**3


def test_config_is_immutable(default_vm_config):
    with pytest.raises(dataclasses.FrozenInstanceError):
        default_vm_config.rdp_port = 3390


def test_allocation_compares_by_value():
    assert ResourceAllocation(2, 4) == ResourceAllocation(cpu_count=2, memory_gib=4)


def test_port_forward_fields():
    forward = PortForward(3390, 3389)
    assert (forward.host_port, forward.guest_port) == (3390, 3389)
