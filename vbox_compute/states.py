"""Translation of hypervisor machine states into abstract node states."""

from __future__ import annotations

from types import MappingProxyType

from vbox_compute.hypervisor import MachineState
from vbox_compute.models import NodeState

MACHINE_TO_NODE_STATE = MappingProxyType(
    {
        MachineState.RUNNING: NodeState.RUNNING,
        # A powered-off clone is presented as resumable
        MachineState.POWERED_OFF: NodeState.SUSPENDED,
        MachineState.DELETING_SNAPSHOT: NodeState.PENDING,
        MachineState.DELETING_SNAPSHOT_ONLINE: NodeState.PENDING,
        MachineState.DELETING_SNAPSHOT_PAUSED: NodeState.PENDING,
        MachineState.FAULT_TOLERANT_SYNCING: NodeState.PENDING,
        MachineState.LIVE_SNAPSHOTTING: NodeState.PENDING,
        MachineState.SETTING_UP: NodeState.PENDING,
        MachineState.STARTING: NodeState.PENDING,
        MachineState.STOPPING: NodeState.PENDING,
        MachineState.RESTORING: NodeState.PENDING,
        # Range markers and teleport states: no finer abstract state exists
        MachineState.FIRST_ONLINE: NodeState.PENDING,
        MachineState.FIRST_TRANSIENT: NodeState.PENDING,
        MachineState.LAST_ONLINE: NodeState.PENDING,
        MachineState.LAST_TRANSIENT: NodeState.PENDING,
        MachineState.TELEPORTED: NodeState.PENDING,
        MachineState.TELEPORTING_IN: NodeState.PENDING,
        MachineState.TELEPORTING_PAUSED_VM: NodeState.PENDING,
        MachineState.ABORTED: NodeState.ERROR,
        MachineState.STUCK: NodeState.ERROR,
        MachineState.NULL: NodeState.UNRECOGNIZED,
    }
)


def machine_to_node_state(state) -> NodeState:
    """Map a hypervisor state to a NodeState; anything unmapped is UNRECOGNIZED."""
    try:
        return MACHINE_TO_NODE_STATE.get(state, NodeState.UNRECOGNIZED)
    except TypeError:
        # unhashable input
        return NodeState.UNRECOGNIZED
