"""Hypervisor capability and its VBoxManage binding."""

from __future__ import annotations

import abc
import enum
import re
import subprocess
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from vbox_compute.constants import DEFAULT_VBOXMANAGE, MASTER_SNAPSHOT_NAME
from vbox_compute.exceptions import HypervisorError, NotFoundError
from vbox_compute.models import CloneMode, ExecutionType, Hardware, MachineInfo, PortForward
from vbox_compute.utils import log, run


class MachineState(str, enum.Enum):
    """VirtualBox machine lifecycle states."""

    NULL = "Null"
    POWERED_OFF = "PoweredOff"
    SAVED = "Saved"
    TELEPORTED = "Teleported"
    ABORTED = "Aborted"
    RUNNING = "Running"
    PAUSED = "Paused"
    STUCK = "Stuck"
    TELEPORTING = "Teleporting"
    LIVE_SNAPSHOTTING = "LiveSnapshotting"
    STARTING = "Starting"
    STOPPING = "Stopping"
    SAVING = "Saving"
    RESTORING = "Restoring"
    TELEPORTING_PAUSED_VM = "TeleportingPausedVM"
    TELEPORTING_IN = "TeleportingIn"
    FAULT_TOLERANT_SYNCING = "FaultTolerantSyncing"
    DELETING_SNAPSHOT_ONLINE = "DeletingSnapshotOnline"
    DELETING_SNAPSHOT_PAUSED = "DeletingSnapshotPaused"
    RESTORING_SNAPSHOT = "RestoringSnapshot"
    DELETING_SNAPSHOT = "DeletingSnapshot"
    SETTING_UP = "SettingUp"
    FIRST_ONLINE = "FirstOnline"
    LAST_ONLINE = "LastOnline"
    FIRST_TRANSIENT = "FirstTransient"
    LAST_TRANSIENT = "LastTransient"


class Hypervisor(abc.ABC):
    """Operations the provider needs from a local hypervisor.

    Handles are opaque strings. Every operation may raise HypervisorError.
    """

    @abc.abstractmethod
    def ensure_available(self) -> str: ...

    @abc.abstractmethod
    def create_machine(self, name: str, os_hint: str) -> str: ...

    @abc.abstractmethod
    def attach_iso(self, handle: str, path: Path) -> None: ...

    @abc.abstractmethod
    def detach_iso(self, handle: str) -> None: ...

    @abc.abstractmethod
    def create_hard_disk(self, path: Path, size_mib: int) -> None: ...

    @abc.abstractmethod
    def attach_hard_disk(self, handle: str, path: Path) -> None: ...

    @abc.abstractmethod
    def set_hardware(self, handle: str, hardware: Hardware) -> None: ...

    @abc.abstractmethod
    def add_port_forward(self, handle: str, rule: PortForward) -> None: ...

    @abc.abstractmethod
    def remove_port_forward(self, handle: str, name: str) -> None: ...

    @abc.abstractmethod
    def start_machine(self, handle: str, execution_type: ExecutionType = ExecutionType.HEADLESS) -> None: ...

    @abc.abstractmethod
    def stop_machine(self, handle: str) -> None: ...

    @abc.abstractmethod
    def acpi_shutdown(self, handle: str) -> None: ...

    @abc.abstractmethod
    def get_info(self, handle: str) -> MachineInfo: ...

    def get_state(self, handle: str) -> MachineState:
        return self.get_info(handle).state  # type: ignore[return-value]

    @abc.abstractmethod
    def clone_machine(self, source_handle: str, new_name: str, mode: CloneMode) -> str: ...

    @abc.abstractmethod
    def delete_machine(self, handle: str) -> None: ...

    @abc.abstractmethod
    def list_machines(self) -> List[str]: ...

    @abc.abstractmethod
    def find_by_name(self, name: str) -> Optional[str]: ...

    @abc.abstractmethod
    def get_tag(self, handle: str, key: str) -> Optional[str]: ...

    @abc.abstractmethod
    def set_tag(self, handle: str, key: str, value: Optional[str]) -> None: ...

    @abc.abstractmethod
    def send_keystrokes(self, handle: str, sequence: str) -> None: ...

    @abc.abstractmethod
    def guest_addresses(self, handle: str) -> List[str]: ...


# VBoxManage --machinereadable spelling of each state
_VBOXMANAGE_STATES = {
    "poweroff": MachineState.POWERED_OFF,
    "saved": MachineState.SAVED,
    "teleported": MachineState.TELEPORTED,
    "aborted": MachineState.ABORTED,
    "running": MachineState.RUNNING,
    "paused": MachineState.PAUSED,
    "gurumeditation": MachineState.STUCK,
    "teleporting": MachineState.TELEPORTING,
    "livesnapshotting": MachineState.LIVE_SNAPSHOTTING,
    "starting": MachineState.STARTING,
    "stopping": MachineState.STOPPING,
    "saving": MachineState.SAVING,
    "restoring": MachineState.RESTORING,
    "teleportingpausedvm": MachineState.TELEPORTING_PAUSED_VM,
    "teleportingin": MachineState.TELEPORTING_IN,
    "faulttolerantsyncing": MachineState.FAULT_TOLERANT_SYNCING,
    "deletingsnapshotlive": MachineState.DELETING_SNAPSHOT_ONLINE,
    "deletingsnapshotlivepaused": MachineState.DELETING_SNAPSHOT_PAUSED,
    "restoringsnapshot": MachineState.RESTORING_SNAPSHOT,
    "deletingsnapshot": MachineState.DELETING_SNAPSHOT,
    "settingup": MachineState.SETTING_UP,
}

_EXECUTION_TYPES = {
    ExecutionType.HEADLESS: "headless",
    ExecutionType.GUI: "gui",
    ExecutionType.SDL: "sdl",
}

# Set 1 make/break scancodes for the special keys a boot-loader sequence uses
_SCANCODES = {
    "Enter": ["1c", "9c"],
    "Esc": ["01", "81"],
    "Tab": ["0f", "8f"],
    "Backspace": ["0e", "8e"],
    "Spacebar": ["39", "b9"],
    "F1": ["3b", "bb"],
    "F2": ["3c", "bc"],
    "F6": ["40", "c0"],
    "F10": ["44", "c4"],
    "Up": ["e0", "48", "e0", "c8"],
    "Down": ["e0", "50", "e0", "d0"],
}

_KEY_TOKEN_RE = re.compile(r"<(\w+)>")
_MACHINEREADABLE_RE = re.compile(r'^"?([^"=]+)"?=(.*)$')
_LIST_VMS_RE = re.compile(r'^"(.*)" \{([0-9a-fA-F-]+)\}$')
_STORAGE_KEY_RE = re.compile(r"^(SATA|IDE|SCSI|SAS|NVMe|Floppy)[\w ]*-\d+-\d+$")
_DISK_SUFFIXES = (".vdi", ".vmdk", ".vhd", ".hdd", ".qcow", ".qed")

STORAGE_CONTROLLER_HDD = "SATA"
STORAGE_CONTROLLER_DVD = "IDE"


def parse_machinereadable(output: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line in output.splitlines():
        match = _MACHINEREADABLE_RE.match(line.strip())
        if not match:
            continue
        key, value = match.group(1), match.group(2).strip()
        if len(value) >= 2 and value[0] == value[-1] == '"':
            value = value[1:-1]
        values[key] = value
    return values


def parse_machine_info(output: str) -> MachineInfo:
    values = parse_machinereadable(output)
    if "UUID" not in values:
        raise HypervisorError("Unexpected VBoxManage showvminfo output (no UUID)")

    disks: List[str] = []
    iso_attached = False
    for key, value in values.items():
        if not _STORAGE_KEY_RE.match(key):
            continue
        lowered = value.lower()
        if lowered.endswith(".iso"):
            iso_attached = True
        elif lowered.endswith(_DISK_SUFFIXES):
            disks.append(value)

    nics: Dict[int, str] = {}
    forwards: List[PortForward] = []
    for key, value in values.items():
        nic_match = re.match(r"^nic(\d+)$", key)
        if nic_match and value != "none":
            nics[int(nic_match.group(1))] = value
        if key.startswith("Forwarding("):
            parts = value.split(",")
            if len(parts) == 6:
                name, proto, host_ip, host_port, _guest_ip, guest_port = parts
                forwards.append(
                    PortForward(name=name, host_ip=host_ip, host_port=int(host_port),
                                guest_port=int(guest_port), protocol=proto)
                )

    raw_state = values.get("VMState", "")
    state = _VBOXMANAGE_STATES.get(raw_state.lower(), MachineState.NULL)
    return MachineInfo(
        uuid=values["UUID"],
        name=values.get("name", ""),
        state=state,
        os_type=values.get("ostype", ""),
        cpu_count=int(values.get("cpus", "1") or 1),
        memory_mib=int(values.get("memory", "0") or 0),
        disk_paths=disks,
        nics=nics,
        port_forwards=forwards,
        iso_attached=iso_attached,
    )


def parse_keystrokes(sequence: str) -> List[tuple]:
    """Split ``text<Enter>more<Wait>`` into ('text', ...), ('key', ...) and ('wait', ...) steps."""
    steps: List[tuple] = []
    pos = 0
    for match in _KEY_TOKEN_RE.finditer(sequence):
        if match.start() > pos:
            steps.append(("text", sequence[pos:match.start()]))
        token = match.group(1)
        if token == "Wait":
            steps.append(("wait", 1.0))
        elif token in _SCANCODES:
            steps.append(("key", token))
        else:
            steps.append(("text", match.group(0)))
        pos = match.end()
    if pos < len(sequence):
        steps.append(("text", sequence[pos:]))
    return steps


class VBoxManageHypervisor(Hypervisor):
    """Drives VirtualBox through the VBoxManage command-line front end.

    Writes against one machine are serialised on a per-handle lock; listing
    and inspection run concurrently.
    """

    def __init__(self, vboxmanage: str = DEFAULT_VBOXMANAGE, base_folder: Optional[Path] = None) -> None:
        self.vboxmanage = vboxmanage
        self.base_folder = base_folder
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, handle: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(handle, threading.RLock())
        with lock:
            yield

    def _vbox(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        cmd = [self.vboxmanage, *args]
        try:
            return run(cmd, check=check, capture_output=True)
        except FileNotFoundError:
            raise HypervisorError(f"{self.vboxmanage} not found. Is VirtualBox installed and on PATH?")
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or exc.stdout or "").strip().splitlines()
            reason = detail[-1] if detail else f"exit status {exc.returncode}"
            raise HypervisorError(f"VBoxManage {args[0]} failed: {reason}") from exc

    def ensure_available(self) -> str:
        version = self._vbox("--version").stdout.strip()
        log("DEBUG", f"VirtualBox {version}")
        return version

    def create_machine(self, name: str, os_hint: str) -> str:
        args = ["createvm", "--name", name, "--ostype", os_hint, "--register"]
        if self.base_folder is not None:
            args.extend(["--basefolder", str(self.base_folder)])
        output = self._vbox(*args).stdout
        match = re.search(r"UUID:\s*([0-9a-fA-F-]+)", output)
        if not match:
            raise HypervisorError(f"Could not determine UUID of new machine {name}")
        handle = match.group(1)
        with self._locked(handle):
            self._vbox("storagectl", handle, "--name", STORAGE_CONTROLLER_HDD, "--add", "sata",
                       "--controller", "IntelAhci", "--portcount", "1")
            self._vbox("storagectl", handle, "--name", STORAGE_CONTROLLER_DVD, "--add", "ide")
        log("DEBUG", f"Created machine {name} ({handle})")
        return handle

    def attach_iso(self, handle: str, path: Path) -> None:
        with self._locked(handle):
            self._vbox("storageattach", handle, "--storagectl", STORAGE_CONTROLLER_DVD, "--port", "0",
                       "--device", "0", "--type", "dvddrive", "--medium", str(path))

    def detach_iso(self, handle: str) -> None:
        with self._locked(handle):
            self._vbox("storageattach", handle, "--storagectl", STORAGE_CONTROLLER_DVD, "--port", "0",
                       "--device", "0", "--type", "dvddrive", "--medium", "emptydrive")

    def create_hard_disk(self, path: Path, size_mib: int) -> None:
        self._vbox("createmedium", "disk", "--filename", str(path), "--size", str(size_mib), "--format", "VDI")

    def attach_hard_disk(self, handle: str, path: Path) -> None:
        with self._locked(handle):
            self._vbox("storageattach", handle, "--storagectl", STORAGE_CONTROLLER_HDD, "--port", "0",
                       "--device", "0", "--type", "hdd", "--medium", str(path))

    def set_hardware(self, handle: str, hardware: Hardware) -> None:
        args = ["modifyvm", handle, "--cpus", str(hardware.cpu_count), "--memory", str(hardware.memory_mib),
                "--ioapic", "on"]
        for index, nic in enumerate(hardware.network_attachments, start=1):
            args.extend([f"--nic{index}", nic.kind])
            if nic.kind == "hostonly":
                args.extend([f"--hostonlyadapter{index}", nic.interface or ""])
            elif nic.kind == "bridged":
                args.extend([f"--bridgeadapter{index}", nic.interface or ""])
            elif nic.kind == "intnet" and nic.interface:
                args.extend([f"--intnet{index}", nic.interface])
        with self._locked(handle):
            self._vbox(*args)

    def add_port_forward(self, handle: str, rule: PortForward) -> None:
        spec = f"{rule.name},{rule.protocol},{rule.host_ip},{rule.host_port},,{rule.guest_port}"
        with self._locked(handle):
            self._vbox("modifyvm", handle, "--natpf1", spec)

    def remove_port_forward(self, handle: str, name: str) -> None:
        with self._locked(handle):
            self._vbox("modifyvm", handle, "--natpf1", "delete", name)

    def start_machine(self, handle: str, execution_type: ExecutionType = ExecutionType.HEADLESS) -> None:
        with self._locked(handle):
            self._vbox("startvm", handle, "--type", _EXECUTION_TYPES[ExecutionType(execution_type)])

    def stop_machine(self, handle: str) -> None:
        with self._locked(handle):
            self._vbox("controlvm", handle, "poweroff")

    def acpi_shutdown(self, handle: str) -> None:
        with self._locked(handle):
            self._vbox("controlvm", handle, "acpipowerbutton")

    def get_info(self, handle: str) -> MachineInfo:
        result = self._vbox("showvminfo", handle, "--machinereadable", check=False)
        if result.returncode != 0:
            raise NotFoundError(f"Machine {handle} is not registered")
        return parse_machine_info(result.stdout)

    def _has_snapshot(self, handle: str, name: str) -> bool:
        result = self._vbox("snapshot", handle, "list", "--machinereadable", check=False)
        if result.returncode != 0:
            return False
        return any(value == name for key, value in parse_machinereadable(result.stdout).items()
                   if key.startswith("SnapshotName"))

    def clone_machine(self, source_handle: str, new_name: str, mode: CloneMode) -> str:
        args = ["clonevm", source_handle, "--name", new_name, "--register"]
        if CloneMode(mode) is CloneMode.LINKED:
            # only the snapshot is a write to the source; clonevm itself just reads it
            with self._locked(source_handle):
                if not self._has_snapshot(source_handle, MASTER_SNAPSHOT_NAME):
                    log("INFO", f"Taking {MASTER_SNAPSHOT_NAME} of {source_handle} for linked clones")
                    self._vbox("snapshot", source_handle, "take", MASTER_SNAPSHOT_NAME)
            args.extend(["--snapshot", MASTER_SNAPSHOT_NAME, "--options", "link"])
        else:
            args.extend(["--mode", "machine"])
        if self.base_folder is not None:
            args.extend(["--basefolder", str(self.base_folder)])
        self._vbox(*args)
        handle = self.find_by_name(new_name)
        if handle is None:
            raise HypervisorError(f"Clone {new_name} is not registered after clonevm")
        return handle

    def delete_machine(self, handle: str) -> None:
        with self._locked(handle):
            self._vbox("unregistervm", handle, "--delete")
        with self._locks_guard:
            self._locks.pop(handle, None)

    def _list_vms(self) -> List[tuple]:
        output = self._vbox("list", "vms").stdout
        machines = []
        for line in output.splitlines():
            match = _LIST_VMS_RE.match(line.strip())
            if match:
                machines.append((match.group(1), match.group(2)))
        return machines

    def list_machines(self) -> List[str]:
        return [uuid for _name, uuid in self._list_vms()]

    def find_by_name(self, name: str) -> Optional[str]:
        for machine_name, uuid in self._list_vms():
            if machine_name == name:
                return uuid
        return None

    def get_tag(self, handle: str, key: str) -> Optional[str]:
        output = self._vbox("getextradata", handle, key).stdout.strip()
        if output.startswith("Value:"):
            return output[len("Value:"):].strip()
        return None

    def set_tag(self, handle: str, key: str, value: Optional[str]) -> None:
        with self._locked(handle):
            if value is None:
                self._vbox("setextradata", handle, key)
            else:
                self._vbox("setextradata", handle, key, value)

    def send_keystrokes(self, handle: str, sequence: str) -> None:
        with self._locked(handle):
            for kind, value in parse_keystrokes(sequence):
                if kind == "wait":
                    time.sleep(value)
                elif kind == "key":
                    self._vbox("controlvm", handle, "keyboardputscancode", *_SCANCODES[value])
                elif value:
                    self._vbox("controlvm", handle, "keyboardputstring", value)

    def guest_addresses(self, handle: str) -> List[str]:
        count_raw = self._guest_property(handle, "/VirtualBox/GuestInfo/Net/Count")
        try:
            count = int(count_raw or 0)
        except ValueError:
            count = 0
        addresses = []
        for index in range(count):
            address = self._guest_property(handle, f"/VirtualBox/GuestInfo/Net/{index}/V4/IP")
            if address:
                addresses.append(address)
        return addresses

    def _guest_property(self, handle: str, name: str) -> Optional[str]:
        result = self._vbox("guestproperty", "get", handle, name, check=False)
        output = (result.stdout or "").strip()
        if result.returncode != 0 or not output.startswith("Value:"):
            return None
        return output[len("Value:"):].strip()
