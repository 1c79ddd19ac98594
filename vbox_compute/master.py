"""Golden master construction: ISO download, unattended install, finalisation."""

from __future__ import annotations

import string
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from vbox_compute.constants import (
    INSTALL_CPUS,
    INSTALL_DISK_MIB,
    INSTALL_MEMORY_MIB,
    INSTALL_STATE_COMPLETE,
    INSTALL_STATE_KEY,
    LOOPBACK,
    MASTER_PREFIX,
    POLL_INTERVAL,
    SSH_FORWARD_RULE,
    SSH_MIN_ATTEMPT_TIMEOUT,
)
from vbox_compute.exceptions import (
    CatalogueError,
    HypervisorError,
    InstallTimeoutError,
    ProviderError,
    StorageError,
)
from vbox_compute.fetcher import FileFetcher
from vbox_compute.hypervisor import Hypervisor, MachineState
from vbox_compute.models import ExecutionType, Hardware, ImageSpec, Master, NetworkAttachment, PortForward
from vbox_compute.preseed import PreseedLease, PreseedServer
from vbox_compute.ssh import SshClient, SshClientFactory, ssh_responds
from vbox_compute.utils import ensure_directory, free_port, hash_password, invariant_error, log, wait_until

INSTALL_HARDWARE = Hardware(
    id="install",
    cpu_count=INSTALL_CPUS,
    memory_mib=INSTALL_MEMORY_MIB,
    disk_mib=INSTALL_DISK_MIB,
    network_attachments=(NetworkAttachment(kind="nat"),),
)


def master_name(image_id: str) -> str:
    return f"{MASTER_PREFIX}{image_id}"


def preseed_values(spec: ImageSpec, ssh_public_key: Optional[str] = None) -> Dict[str, str]:
    credentials = spec.login_credentials
    password = credentials.password or ""
    return {
        "hostname": master_name(spec.id),
        "image_id": spec.id,
        "username": credentials.username,
        "password": password,
        "password_crypted": hash_password(password) if password else "!",
        "ssh_public_key": ssh_public_key or "",
        "os_family": spec.os_family,
        "os_version": spec.os_version,
        "os_arch": spec.os_arch,
    }


def render_preseed(spec: ImageSpec, ssh_public_key: Optional[str] = None) -> str:
    """Fill the image's preseed template; an unknown ``${slot}`` is a catalogue error."""
    try:
        return string.Template(spec.preseed_template).substitute(preseed_values(spec, ssh_public_key))
    except KeyError as exc:
        raise CatalogueError(f"Preseed template uses unknown slot {exc}", image_id=spec.id)
    except ValueError as exc:
        raise CatalogueError(f"Malformed preseed template: {exc}", image_id=spec.id)


def render_keystrokes(sequence: str, preseed_url: str, hostname: str) -> str:
    return string.Template(sequence).safe_substitute(preseed_url=preseed_url, hostname=hostname)


class MasterBuilder:
    """Produces an installed, powered-off template machine for an image."""

    def __init__(
        self,
        hypervisor: Hypervisor,
        fetcher: FileFetcher,
        preseed_server: PreseedServer,
        ssh_client_factory: SshClientFactory = SshClient,
        masters_dir: Optional[Path] = None,
        install_timeout: float = 45 * 60.0,
        min_install_time: float = 60.0,
        shutdown_timeout: float = 60.0,
        keep_partials: bool = False,
        ssh_public_key: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.hypervisor = hypervisor
        self.fetcher = fetcher
        self.preseed_server = preseed_server
        self.ssh_client_factory = ssh_client_factory
        self.masters_dir = masters_dir or fetcher.download_dir.parent / "masters"
        self.install_timeout = install_timeout
        self.min_install_time = min_install_time
        self.shutdown_timeout = shutdown_timeout
        self.keep_partials = keep_partials
        self.ssh_public_key = ssh_public_key
        self._clock = clock
        self._sleep = sleep

    def build(self, spec: ImageSpec) -> Master:
        try:
            return self._build(spec)
        except ProviderError as exc:
            raise exc.with_context(image_id=spec.id)

    def _build(self, spec: ImageSpec) -> Master:
        name = master_name(spec.id)

        existing = self.hypervisor.find_by_name(name)
        if existing is not None:
            if self.hypervisor.get_tag(existing, INSTALL_STATE_KEY) == INSTALL_STATE_COMPLETE:
                log("INFO", f"Reusing installed master {name}")
                return self._to_master(spec, existing)
            log("WARN", f"Found unfinished master {name}; discarding it before reinstalling")
            self._discard(existing)

        log("INFO", f"Building master {name} from {spec.install_medium_uri}")
        iso = self.fetcher.fetch(spec.install_medium_uri, sha256=spec.install_medium_sha256)
        document = render_preseed(spec, self.ssh_public_key)

        with self.preseed_server.lease(document, timeout=self.install_timeout) as lease:
            handle = self.hypervisor.create_machine(name, spec.os_type)
            try:
                ssh_port = self._install(spec, handle, iso, lease)
                self._finalise(handle)
            except BaseException:
                self._cleanup_partial(name, handle)
                raise
        log("SUCCESS", f"Master {name} installed (ssh forward was {LOOPBACK}:{ssh_port})")
        return self._to_master(spec, handle)

    def _install(self, spec: ImageSpec, handle: str, iso: Path, lease: PreseedLease) -> int:
        try:
            ensure_directory(self.masters_dir)
        except OSError as exc:
            raise StorageError(f"Cannot create masters directory {self.masters_dir}: {exc}")
        disk = self.masters_dir / f"{master_name(spec.id)}.vdi"
        if disk.exists():
            log("WARN", f"Removing stale master disk {disk}")
            disk.unlink()
        self.hypervisor.create_hard_disk(disk, INSTALL_DISK_MIB)
        self.hypervisor.attach_hard_disk(handle, disk)
        self.hypervisor.set_hardware(handle, INSTALL_HARDWARE)
        ssh_port = free_port(LOOPBACK)
        self.hypervisor.add_port_forward(handle, PortForward(SSH_FORWARD_RULE, LOOPBACK, ssh_port, 22))
        self.hypervisor.attach_iso(handle, iso)
        self.hypervisor.start_machine(handle, ExecutionType.HEADLESS)
        if spec.keystroke_sequence:
            keys = render_keystrokes(spec.keystroke_sequence, lease.guest_url, master_name(spec.id))
            self.hypervisor.send_keystrokes(handle, keys)
        self._await_install(spec, handle, ssh_port, lease)
        return ssh_port

    def _await_install(self, spec: ImageSpec, handle: str, ssh_port: int, lease: PreseedLease) -> None:
        """Block until the guest finished installing: it powered itself off or SSH answers."""
        start = self._clock()
        deadline = start + self.install_timeout
        ssh = self.ssh_client_factory(LOOPBACK, ssh_port, spec.login_credentials)
        while True:
            elapsed = self._clock() - start
            if not lease.released and lease.fetched():
                log("INFO", f"Installer for {spec.id} fetched its preseed document")
                lease.release()

            state = self.hypervisor.get_state(handle)
            if state is MachineState.POWERED_OFF:
                if elapsed >= self.min_install_time:
                    log("SUCCESS", f"Installer for {spec.id} powered the guest off after {elapsed:.0f}s")
                    return
                raise HypervisorError(
                    f"Install guest powered off after {elapsed:.0f}s, before the minimum install time"
                )
            if state in (MachineState.ABORTED, MachineState.STUCK):
                raise HypervisorError(f"Install guest entered state {state.value}")

            if elapsed >= self.min_install_time and ssh_responds(
                ssh, timeout=max(deadline - self._clock(), SSH_MIN_ATTEMPT_TIMEOUT)
            ):
                log("INFO", f"Installed system for {spec.id} answers on SSH; shutting it down")
                self._power_off(handle)
                return

            if self._clock() >= deadline:
                raise InstallTimeoutError(
                    f"Installation did not complete within {self.install_timeout:.0f}s"
                )
            self._sleep(POLL_INTERVAL)

    def _power_off(self, handle: str) -> None:
        self.hypervisor.acpi_shutdown(handle)
        stopped = wait_until(
            lambda: self.hypervisor.get_state(handle) is MachineState.POWERED_OFF,
            self.shutdown_timeout,
            clock=self._clock,
            sleep=self._sleep,
        )
        if not stopped:
            log("WARN", f"Machine {handle} ignored ACPI shutdown; powering off")
            self.hypervisor.stop_machine(handle)

    def _finalise(self, handle: str) -> None:
        self.hypervisor.detach_iso(handle)
        self.hypervisor.remove_port_forward(handle, SSH_FORWARD_RULE)
        self.hypervisor.set_tag(handle, INSTALL_STATE_KEY, INSTALL_STATE_COMPLETE)

    def _to_master(self, spec: ImageSpec, handle: str) -> Master:
        info = self.hypervisor.get_info(handle)
        if not handle or not info.disk_paths:
            raise invariant_error("Master has no hard disk attached", image_id=spec.id)
        if info.iso_attached:
            log("WARN", f"Master {info.name} still has its install medium attached; detaching it")
            self.hypervisor.detach_iso(handle)
        return Master(
            image_id=spec.id,
            machine_handle=handle,
            source_hard_disk_path=info.disk_paths[0],
            login_credentials=spec.login_credentials,
        )

    def _discard(self, handle: str) -> None:
        if self.hypervisor.get_state(handle) in (MachineState.RUNNING, MachineState.STARTING,
                                                 MachineState.STUCK, MachineState.PAUSED):
            self.hypervisor.stop_machine(handle)
        self.hypervisor.delete_machine(handle)

    def _cleanup_partial(self, name: str, handle: str) -> None:
        if self.keep_partials:
            log("WARN", f"Keeping partially installed master {name} for inspection")
            return
        try:
            self._discard(handle)
            log("INFO", f"Removed partially installed master {name}")
        except ProviderError as exc:
            log("WARN", f"Could not remove partial master {name}: {exc}")
