"""Shared test fixtures: in-memory hypervisor, scripted SSH and a fake clock."""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest
import yaml

from vbox_compute.config import ProviderConfig
from vbox_compute.constants import INSTALL_STATE_COMPLETE, INSTALL_STATE_KEY, MASTER_PREFIX
from vbox_compute.exceptions import HypervisorError, NotFoundError
from vbox_compute.hypervisor import Hypervisor, MachineState
from vbox_compute.models import CloneMode, ExecutionType, Hardware, MachineInfo, PortForward
from vbox_compute.provider import build_provider
from vbox_compute.utils import set_verbose

ISO_PAYLOAD = b"fake install medium\n" * 64

PRESEED_TEMPLATE = (
    "d-i netcfg/get_hostname string ${hostname}\n"
    "d-i passwd/username string ${username}\n"
    "d-i passwd/user-password-crypted password ${password_crypted}\n"
)


@dataclass
class FakeMachine:
    handle: str
    name: str
    os_type: str
    state: MachineState = MachineState.POWERED_OFF
    cpu_count: int = 1
    memory_mib: int = 128
    disks: List[str] = field(default_factory=list)
    iso: Optional[str] = None
    nics: Dict[int, str] = field(default_factory=lambda: {1: "nat"})
    forwards: Dict[str, PortForward] = field(default_factory=dict)
    tags: Dict[str, str] = field(default_factory=dict)
    ignore_acpi: bool = False


class FakeHypervisor(Hypervisor):
    """In-memory hypervisor recording every call.

    ``fail_on[method] = exc`` makes that method raise ``exc``; ``hooks`` run
    on every inspection and may move machines between states.
    """

    def __init__(self) -> None:
        self.machines: Dict[str, FakeMachine] = {}
        self.calls: List[tuple] = []
        self.fail_on: Dict[str, BaseException] = {}
        self.hooks: List[Callable[[FakeMachine], None]] = []
        self.ignore_acpi_by_default = False
        self._counter = 0
        self._lock = threading.RLock()

    def _record(self, method: str, *args) -> None:
        with self._lock:
            self.calls.append((method, *args))
        exc = self.fail_on.get(method)
        if exc is not None:
            raise exc

    def _machine(self, handle: str) -> FakeMachine:
        try:
            return self.machines[handle]
        except KeyError:
            raise NotFoundError(f"Machine {handle} is not registered")

    def calls_to(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]

    def add_machine(self, name: str, state: MachineState = MachineState.POWERED_OFF, **tags: str) -> str:
        with self._lock:
            self._counter += 1
            handle = f"uuid-{self._counter:04d}"
            self.machines[handle] = FakeMachine(
                handle=handle, name=name, os_type="Ubuntu_64", state=state,
                tags=dict(tags), ignore_acpi=self.ignore_acpi_by_default,
            )
        return handle

    def add_master(self, image_id: str, disk: str = "/masters/disk.vdi") -> str:
        handle = self.add_machine(f"{MASTER_PREFIX}{image_id}", **{INSTALL_STATE_KEY: INSTALL_STATE_COMPLETE})
        self.machines[handle].disks.append(disk)
        return handle

    def by_name(self, name: str) -> Optional[FakeMachine]:
        with self._lock:
            for machine in self.machines.values():
                if machine.name == name:
                    return machine
        return None

    # Hypervisor operations

    def ensure_available(self) -> str:
        self._record("ensure_available")
        return "7.0.0"

    def create_machine(self, name: str, os_hint: str) -> str:
        self._record("create_machine", name, os_hint)
        if self.by_name(name) is not None:
            raise HypervisorError(f"Machine '{name}' already exists")
        handle = self.add_machine(name)
        self.machines[handle].os_type = os_hint
        return handle

    def attach_iso(self, handle: str, path: Path) -> None:
        self._record("attach_iso", handle, path)
        self._machine(handle).iso = str(path)

    def detach_iso(self, handle: str) -> None:
        self._record("detach_iso", handle)
        self._machine(handle).iso = None

    def create_hard_disk(self, path: Path, size_mib: int) -> None:
        self._record("create_hard_disk", path, size_mib)
        Path(path).write_bytes(b"")

    def attach_hard_disk(self, handle: str, path: Path) -> None:
        self._record("attach_hard_disk", handle, path)
        self._machine(handle).disks.append(str(path))

    def set_hardware(self, handle: str, hardware: Hardware) -> None:
        self._record("set_hardware", handle, hardware)
        machine = self._machine(handle)
        machine.cpu_count = hardware.cpu_count
        machine.memory_mib = hardware.memory_mib
        machine.nics = {i: nic.kind for i, nic in enumerate(hardware.network_attachments, start=1)}

    def add_port_forward(self, handle: str, rule: PortForward) -> None:
        self._record("add_port_forward", handle, rule)
        machine = self._machine(handle)
        if rule.name in machine.forwards:
            raise HypervisorError(f"Port forward {rule.name} already exists")
        machine.forwards[rule.name] = rule

    def remove_port_forward(self, handle: str, name: str) -> None:
        self._record("remove_port_forward", handle, name)
        machine = self._machine(handle)
        if name not in machine.forwards:
            raise HypervisorError(f"No port forward named {name}")
        del machine.forwards[name]

    def start_machine(self, handle: str, execution_type: ExecutionType = ExecutionType.HEADLESS) -> None:
        self._record("start_machine", handle, execution_type)
        self._machine(handle).state = MachineState.RUNNING

    def stop_machine(self, handle: str) -> None:
        self._record("stop_machine", handle)
        self._machine(handle).state = MachineState.POWERED_OFF

    def acpi_shutdown(self, handle: str) -> None:
        self._record("acpi_shutdown", handle)
        machine = self._machine(handle)
        if not machine.ignore_acpi:
            machine.state = MachineState.POWERED_OFF

    def get_info(self, handle: str) -> MachineInfo:
        machine = self._machine(handle)
        for hook in list(self.hooks):
            hook(machine)
        return MachineInfo(
            uuid=machine.handle,
            name=machine.name,
            state=machine.state,
            os_type=machine.os_type,
            cpu_count=machine.cpu_count,
            memory_mib=machine.memory_mib,
            disk_paths=list(machine.disks),
            nics=dict(machine.nics),
            port_forwards=list(machine.forwards.values()),
            iso_attached=machine.iso is not None,
        )

    def clone_machine(self, source_handle: str, new_name: str, mode: CloneMode) -> str:
        self._record("clone_machine", source_handle, new_name, mode)
        source = self._machine(source_handle)
        if self.by_name(new_name) is not None:
            raise HypervisorError(f"Machine '{new_name}' already exists")
        handle = self.add_machine(new_name, **source.tags)
        clone = self.machines[handle]
        clone.os_type = source.os_type
        clone.forwards = dict(source.forwards)
        clone.disks = [f"/clones/{new_name}.vdi"]
        return handle

    def delete_machine(self, handle: str) -> None:
        self._record("delete_machine", handle)
        with self._lock:
            self._machine(handle)
            del self.machines[handle]

    def list_machines(self) -> List[str]:
        with self._lock:
            return list(self.machines)

    def find_by_name(self, name: str) -> Optional[str]:
        machine = self.by_name(name)
        return machine.handle if machine else None

    def get_tag(self, handle: str, key: str) -> Optional[str]:
        return self._machine(handle).tags.get(key)

    def set_tag(self, handle: str, key: str, value: Optional[str]) -> None:
        self._record("set_tag", handle, key, value)
        tags = self._machine(handle).tags
        if value is None:
            tags.pop(key, None)
        else:
            tags[key] = value

    def send_keystrokes(self, handle: str, sequence: str) -> None:
        self._record("send_keystrokes", handle, sequence)

    def guest_addresses(self, handle: str) -> List[str]:
        return ["10.0.2.15"] if self._machine(handle).state is MachineState.RUNNING else []


class FakeSshClient:
    def __init__(self, factory: "FakeSsh", host: str, port: int, credentials) -> None:
        self.factory = factory
        self.host = host
        self.port = port
        self.credentials = credentials

    def connect(self, timeout: Optional[float] = None) -> None:
        self.factory.attempts += 1
        self.factory.timeouts.append(timeout)
        if self.factory.on_connect is not None:
            self.factory.on_connect(timeout)
        if not self.factory.responds:
            raise OSError("Connection refused")

    def disconnect(self) -> None:
        pass


class FakeSsh:
    """SSH client factory whose clients succeed while ``responds`` is true."""

    def __init__(self, responds: bool = True) -> None:
        self.responds = responds
        self.attempts = 0
        self.timeouts: List[Optional[float]] = []
        self.on_connect: Optional[Callable[[Optional[float]], None]] = None
        self.clients: List[FakeSshClient] = []

    def __call__(self, host: str, port: int, credentials) -> FakeSshClient:
        client = FakeSshClient(self, host, port, credentials)
        self.clients.append(client)
        return client


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(autouse=True)
def quiet_logs():
    set_verbose(False)
    yield
    set_verbose(False)


@pytest.fixture
def hypervisor() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def fake_ssh() -> FakeSsh:
    return FakeSsh()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def iso_file(tmp_path) -> Path:
    path = tmp_path / "source" / "ubuntu.iso"
    path.parent.mkdir()
    path.write_bytes(ISO_PAYLOAD)
    return path


@pytest.fixture
def iso_sha256() -> str:
    return hashlib.sha256(ISO_PAYLOAD).hexdigest()


def image_record(image_id: str, iso_uri: str, **overrides) -> dict:
    record = {
        "id": image_id,
        "name": f"Image {image_id}",
        "os_family": "ubuntu",
        "os_version": "22.04",
        "os_arch": "x86_64",
        "iso": iso_uri,
        "preseed": PRESEED_TEMPLATE,
        "username": "toor",
        "password": "password",
    }
    record.update(overrides)
    return record


@pytest.fixture
def catalogue_file(tmp_path, iso_file, iso_sha256) -> Path:
    uri = iso_file.as_uri()
    data = {
        "images": [
            image_record("ubuntu-22-amd64", uri, iso_sha256=iso_sha256),
            image_record("debian-12-amd64", uri, os_family="debian", os_version="12"),
        ]
    }
    path = tmp_path / "images.yaml"
    path.write_text(yaml.safe_dump(data, sort_keys=False))
    return path


@pytest.fixture
def provider_config(tmp_path, catalogue_file) -> ProviderConfig:
    return ProviderConfig(
        download_dir=tmp_path / "isos",
        masters_dir=tmp_path / "masters",
        catalogue_path=catalogue_file,
        preseed_bind_host="127.0.0.1",
        install_timeout=600.0,
        min_install_time=0.0,
        node_running_timeout=10.0,
        shutdown_timeout=5.0,
    )


@pytest.fixture
def provider(provider_config, hypervisor, fake_ssh, clock):
    built = build_provider(provider_config, hypervisor=hypervisor, ssh_client_factory=fake_ssh,
                           clock=clock.monotonic, sleep=clock.sleep)
    yield built
    built.close()


@pytest.fixture
def make_record():
    return image_record
