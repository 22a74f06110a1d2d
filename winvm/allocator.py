"""Host resource allocation policies for winvm."""

from __future__ import annotations

from typing import Optional

from winvm.constants import MIN_VM_MEMORY_GB
from winvm.exceptions import ValidationError
from winvm.models import ResourceAllocation

PROVISION = "provision"
RUN = "run"
POLICIES = (PROVISION, RUN)

# Large hosts get a fixed run allocation so the host desktop keeps headroom
LARGE_HOST_CORES = 16
LARGE_HOST_ALLOCATION = ResourceAllocation(cpu_count=8, memory_gib=16)


def allocate(
    policy: str,
    host_cores: int,
    host_memory_gib: int,
    memory_override: Optional[int] = None,
) -> ResourceAllocation:
    """Compute the VM's cores and memory for ``policy`` from host facts."""
    if policy not in POLICIES:
        raise ValidationError(f"Unknown allocation policy '{policy}'. Supported: {', '.join(POLICIES)}")
    if memory_override is not None and memory_override < MIN_VM_MEMORY_GB:
        raise ValidationError(f"VM memory must be a number >= {MIN_VM_MEMORY_GB} GB (got {memory_override})")

    if policy == RUN and host_cores > LARGE_HOST_CORES:
        allocation = LARGE_HOST_ALLOCATION
    else:
        memory_floor = 2 if policy == PROVISION else 4
        allocation = ResourceAllocation(
            cpu_count=max(2, host_cores // 2),
            memory_gib=max(memory_floor, host_memory_gib // 2),
        )

    if memory_override is not None:
        allocation = ResourceAllocation(cpu_count=allocation.cpu_count, memory_gib=memory_override)
    return allocation
