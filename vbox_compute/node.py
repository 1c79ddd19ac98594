"""Node creation: clone a master, boot it and wait until it answers on SSH."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional, Set

from vbox_compute.cache import MasterCache
from vbox_compute.catalogue import ImageCatalogue
from vbox_compute.constants import (
    DERIVED_FROM_KEY,
    INSTALL_STATE_KEY,
    LOOPBACK,
    MACHINE_NAME_RE,
    MASTER_PREFIX,
    NODE_HARDWARE_KEY,
    NODE_IMAGE_KEY,
    NODE_SSH_PORT_KEY,
    SSH_FORWARD_RULE,
    SSH_MIN_ATTEMPT_TIMEOUT,
)
from vbox_compute.exceptions import ConfigError, NameCollisionError, NodeUnreachableError, ProviderError
from vbox_compute.hypervisor import Hypervisor, MachineState
from vbox_compute.models import (
    ExecutionType,
    Hardware,
    LoginCredentials,
    NetworkAttachment,
    NodeAndInitialCredentials,
    NodeMetadata,
    NodeSpec,
    PortForward,
)
from vbox_compute.ssh import SshClient, SshClientFactory, ssh_responds
from vbox_compute.states import machine_to_node_state
from vbox_compute.utils import free_port, log, wait_until


def node_metadata(
    hypervisor: Hypervisor,
    handle: str,
    credentials: Optional[LoginCredentials] = None,
) -> NodeMetadata:
    """Describe a machine as a node, translating its state through the state table."""
    info = hypervisor.get_info(handle)
    state = machine_to_node_state(info.state)

    ssh_port: Optional[int] = None
    raw_port = hypervisor.get_tag(handle, NODE_SSH_PORT_KEY)
    if raw_port and raw_port.isdigit():
        ssh_port = int(raw_port)
    else:
        for rule in info.port_forwards:
            if rule.name == SSH_FORWARD_RULE:
                ssh_port = rule.host_port

    private_addresses = []
    if info.state is MachineState.RUNNING:
        private_addresses = hypervisor.guest_addresses(handle)

    nics = tuple(NetworkAttachment(kind=kind) for _index, kind in sorted(info.nics.items()))
    hardware = Hardware(
        id=hypervisor.get_tag(handle, NODE_HARDWARE_KEY) or "custom",
        cpu_count=info.cpu_count,
        memory_mib=info.memory_mib,
        network_attachments=nics or (NetworkAttachment(),),
    )
    return NodeMetadata(
        id=info.uuid,
        name=info.name,
        state=state,
        hardware=hardware,
        image_id=hypervisor.get_tag(handle, NODE_IMAGE_KEY),
        login_credentials=credentials,
        private_addresses=private_addresses,
        public_addresses=[],
        ssh_host=LOOPBACK if ssh_port else None,
        ssh_port=ssh_port,
    )


class NodeCreator:
    """Turns a NodeSpec into a running, SSH-reachable clone of the image's master."""

    def __init__(
        self,
        hypervisor: Hypervisor,
        catalogue: ImageCatalogue,
        cache: MasterCache,
        ssh_client_factory: SshClientFactory = SshClient,
        node_running_timeout: float = 300.0,
        execution_type: ExecutionType = ExecutionType.HEADLESS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.hypervisor = hypervisor
        self.catalogue = catalogue
        self.cache = cache
        self.ssh_client_factory = ssh_client_factory
        self.node_running_timeout = node_running_timeout
        self.execution_type = execution_type
        self._clock = clock
        self._sleep = sleep
        self._claimed: Set[str] = set()
        self._claimed_lock = threading.Lock()

    def create(self, node_spec: NodeSpec) -> NodeAndInitialCredentials:
        name = node_spec.name
        if not MACHINE_NAME_RE.match(name):
            raise ConfigError(f"Invalid node name '{name}'", node_name=name)
        if name.startswith(MASTER_PREFIX):
            raise NameCollisionError(f"Node names must not start with '{MASTER_PREFIX}'", node_name=name)

        self._claim(name)
        try:
            return self._create(node_spec)
        except ProviderError as exc:
            raise exc.with_context(node_name=name, image_id=node_spec.image_id)
        finally:
            self._release(name)

    def _claim(self, name: str) -> None:
        # the claim set guards concurrent creates; the hypervisor lookup runs unlocked
        with self._claimed_lock:
            if name in self._claimed:
                raise NameCollisionError(f"A machine named '{name}' is already being created", node_name=name)
            self._claimed.add(name)
        try:
            existing = self.hypervisor.find_by_name(name)
        except BaseException:
            self._release(name)
            raise
        if existing is not None:
            self._release(name)
            raise NameCollisionError(f"A machine named '{name}' already exists", node_name=name)

    def _release(self, name: str) -> None:
        with self._claimed_lock:
            self._claimed.discard(name)

    def _create(self, node_spec: NodeSpec) -> NodeAndInitialCredentials:
        spec = self.catalogue.get(node_spec.image_id)
        master = self.cache.get(spec)
        credentials = master.login_credentials or spec.login_credentials

        log("INFO", f"Cloning {node_spec.name} from master of {spec.id} ({node_spec.clone_mode.value.lower()})")
        handle = self.hypervisor.clone_machine(master.machine_handle, node_spec.name, node_spec.clone_mode)
        try:
            ssh_port = self._configure(handle, node_spec)
            self.hypervisor.start_machine(handle, self.execution_type)
            self._await_ssh(node_spec.name, ssh_port, credentials)
            node = node_metadata(self.hypervisor, handle, credentials)
        except NodeUnreachableError:
            # left in place for diagnosis
            raise
        except BaseException:
            self._discard(node_spec.name, handle)
            raise

        log("SUCCESS", f"Node {node_spec.name} is running (ssh {LOOPBACK}:{ssh_port})")
        return NodeAndInitialCredentials(node_id=node.id, node=node, credentials=credentials)

    def _configure(self, handle: str, node_spec: NodeSpec) -> int:
        self.hypervisor.set_hardware(handle, node_spec.hardware)
        inherited = self.hypervisor.get_info(handle).port_forwards
        if any(rule.name == SSH_FORWARD_RULE for rule in inherited):
            self.hypervisor.remove_port_forward(handle, SSH_FORWARD_RULE)
        ssh_port = free_port(LOOPBACK)
        self.hypervisor.add_port_forward(handle, PortForward(SSH_FORWARD_RULE, LOOPBACK, ssh_port, 22))
        # clones inherit the master's extra data
        self.hypervisor.set_tag(handle, INSTALL_STATE_KEY, None)
        self.hypervisor.set_tag(handle, DERIVED_FROM_KEY, None)
        self.hypervisor.set_tag(handle, NODE_IMAGE_KEY, node_spec.image_id)
        self.hypervisor.set_tag(handle, NODE_HARDWARE_KEY, node_spec.hardware.id)
        self.hypervisor.set_tag(handle, NODE_SSH_PORT_KEY, str(ssh_port))
        return ssh_port

    def _await_ssh(self, name: str, ssh_port: int, credentials: LoginCredentials) -> None:
        client = self.ssh_client_factory(LOOPBACK, ssh_port, credentials)
        deadline = self._clock() + self.node_running_timeout

        def attempt() -> bool:
            remaining = max(deadline - self._clock(), SSH_MIN_ATTEMPT_TIMEOUT)
            return ssh_responds(client, timeout=remaining)

        reachable = wait_until(attempt, self.node_running_timeout, clock=self._clock, sleep=self._sleep)
        if not reachable:
            raise NodeUnreachableError(
                f"SSH did not respond within {self.node_running_timeout:.0f}s", node_name=name
            )

    def _discard(self, name: str, handle: str) -> None:
        try:
            running = self.hypervisor.get_state(handle) is MachineState.RUNNING
        except ProviderError:
            running = True
        if running:
            try:
                self.hypervisor.stop_machine(handle)
            except ProviderError as exc:
                log("DEBUG", f"Power off of {name} before removal failed: {exc}")
        try:
            self.hypervisor.delete_machine(handle)
            log("INFO", f"Removed partially created node {name}")
        except ProviderError as exc:
            log("WARN", f"Could not remove partially created node {name}: {exc}")
