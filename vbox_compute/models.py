"""Data models for vbox-compute."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Tuple


class NodeState(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUSPENDED = "SUSPENDED"
    TERMINATED = "TERMINATED"
    ERROR = "ERROR"
    UNRECOGNIZED = "UNRECOGNIZED"


class CloneMode(str, enum.Enum):
    LINKED = "LINKED"
    FULL = "FULL"


class ExecutionType(str, enum.Enum):
    HEADLESS = "HEADLESS"
    GUI = "GUI"
    SDL = "SDL"


class PortForward(NamedTuple):
    name: str
    host_ip: str
    host_port: int
    guest_port: int
    protocol: str = "tcp"


@dataclass(frozen=True)
class LoginCredentials:
    username: str
    password: Optional[str] = None
    private_key: Optional[str] = None
    authenticate_sudo: bool = False

    def __repr__(self) -> str:
        # Never leak secrets into logs
        return (
            f"LoginCredentials(username={self.username!r}, "
            f"password={'***' if self.password else None}, "
            f"private_key={'***' if self.private_key else None})"
        )


@dataclass(frozen=True)
class ImageSpec:
    id: str
    name: str
    os_family: str
    os_version: str
    os_arch: str
    os_type: str
    install_medium_uri: str
    preseed_template: str
    login_credentials: LoginCredentials
    install_medium_sha256: Optional[str] = None
    keystroke_sequence: Optional[str] = None
    description: str = ""


@dataclass(frozen=True)
class Master:
    image_id: str
    machine_handle: str
    source_hard_disk_path: str
    login_credentials: Optional[LoginCredentials] = None


@dataclass(frozen=True)
class NetworkAttachment:
    kind: str = "nat"  # nat, hostonly, bridged, intnet
    interface: Optional[str] = None


@dataclass(frozen=True)
class Hardware:
    id: str
    cpu_count: int
    memory_mib: int
    disk_mib: int = 0  # advisory for linked clones
    network_attachments: Tuple[NetworkAttachment, ...] = (NetworkAttachment(),)


@dataclass
class NodeSpec:
    name: str
    image_id: str
    hardware: Hardware
    clone_mode: CloneMode = CloneMode.LINKED


@dataclass
class NodeMetadata:
    id: str
    name: str
    state: NodeState
    hardware: Hardware
    image_id: Optional[str]
    login_credentials: Optional[LoginCredentials] = None
    private_addresses: List[str] = field(default_factory=list)
    public_addresses: List[str] = field(default_factory=list)
    ssh_host: Optional[str] = None
    ssh_port: Optional[int] = None


@dataclass
class NodeAndInitialCredentials:
    node_id: str
    node: NodeMetadata
    credentials: Optional[LoginCredentials]


@dataclass
class MachineInfo:
    """A hypervisor machine record as reported by the binding."""

    uuid: str
    name: str
    state: object  # hypervisor MachineState; only states.py interprets it
    os_type: str = ""
    cpu_count: int = 1
    memory_mib: int = 0
    disk_paths: List[str] = field(default_factory=list)
    nics: Dict[int, str] = field(default_factory=dict)
    port_forwards: List[PortForward] = field(default_factory=list)
    iso_attached: bool = False
