"""Cloud-style compute façade over the VirtualBox provider components."""

from __future__ import annotations

import dataclasses
import time
from typing import Callable, Dict, List, Optional

from vbox_compute.cache import MasterCache
from vbox_compute.catalogue import ImageCatalogue
from vbox_compute.constants import (
    DERIVED_FROM_KEY,
    IMAGE_ID_RE,
    INSTALL_STATE_COMPLETE,
    INSTALL_STATE_KEY,
    NODE_HARDWARE_KEY,
    NODE_IMAGE_KEY,
    NODE_SSH_PORT_KEY,
    SSH_FORWARD_RULE,
)
from vbox_compute.exceptions import CatalogueError, ConfigError, NameCollisionError, NotFoundError, ProviderError
from vbox_compute.hypervisor import Hypervisor, MachineState
from vbox_compute.master import master_name
from vbox_compute.models import (
    CloneMode,
    ExecutionType,
    Hardware,
    ImageSpec,
    Master,
    NodeAndInitialCredentials,
    NodeMetadata,
    NodeSpec,
)
from vbox_compute.node import NodeCreator, node_metadata
from vbox_compute.utils import invariant_error, log, wait_until

# States in which a machine must be powered off before it can be deleted
_ACTIVE_STATES = {
    MachineState.RUNNING,
    MachineState.PAUSED,
    MachineState.STUCK,
    MachineState.STARTING,
}


class ComputeAdapter:
    """Single entry point for node, image and hardware operations."""

    def __init__(
        self,
        hypervisor: Hypervisor,
        catalogue: ImageCatalogue,
        cache: MasterCache,
        node_creator: NodeCreator,
        hardware_profiles: Dict[str, Hardware],
        default_clone_mode: CloneMode = CloneMode.LINKED,
        execution_type: ExecutionType = ExecutionType.HEADLESS,
        shutdown_timeout: float = 60.0,
        default_image_query: Optional[Dict[str, str]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.hypervisor = hypervisor
        self.catalogue = catalogue
        self.cache = cache
        self.node_creator = node_creator
        self.hardware_profiles = hardware_profiles
        self.default_clone_mode = default_clone_mode
        self.execution_type = execution_type
        self.shutdown_timeout = shutdown_timeout
        self.default_image_query = default_image_query or {}
        self._clock = clock
        self._sleep = sleep

    # Images and hardware

    def list_images(self) -> List[ImageSpec]:
        return list(self.catalogue.load().values())

    def get_image(self, image_id: str) -> Optional[ImageSpec]:
        return self.catalogue.load().get(image_id)

    def default_image(self) -> ImageSpec:
        return self.catalogue.match(**self.default_image_query)

    def list_hardware_profiles(self) -> List[Hardware]:
        return list(self.hardware_profiles.values())

    def _hardware(self, profile: str) -> Hardware:
        try:
            return self.hardware_profiles[profile]
        except KeyError:
            available = ", ".join(sorted(self.hardware_profiles)) or "<none>"
            raise NotFoundError(f"Unknown hardware profile '{profile}'. Available: {available}")

    # Nodes

    def list_nodes(self) -> List[NodeMetadata]:
        nodes = []
        for handle in self.hypervisor.list_machines():
            image_id = self.hypervisor.get_tag(handle, NODE_IMAGE_KEY)
            if not image_id:
                # masters and machines this provider did not create
                continue
            nodes.append(node_metadata(self.hypervisor, handle, self._credentials(image_id)))
        return nodes

    def create_node(
        self,
        name: str,
        image_id: Optional[str] = None,
        hardware_profile: str = "small",
        clone_mode: Optional[CloneMode] = None,
    ) -> NodeAndInitialCredentials:
        if image_id is None:
            image_id = self.default_image().id
        elif self.get_image(image_id) is None:
            self._restore_captured(image_id)
        node_spec = NodeSpec(
            name=name,
            image_id=image_id,
            hardware=self._hardware(hardware_profile),
            clone_mode=CloneMode(clone_mode) if clone_mode else self.default_clone_mode,
        )
        return self.node_creator.create(node_spec)

    def get_node(self, name: str) -> Optional[NodeMetadata]:
        handle = self._find_node(name)
        if handle is None:
            return None
        image_id = self.hypervisor.get_tag(handle, NODE_IMAGE_KEY)
        return node_metadata(self.hypervisor, handle, self._credentials(image_id))

    def destroy_node(self, name: str) -> None:
        handle = self._require_node(name)
        if self.hypervisor.get_state(handle) in _ACTIVE_STATES:
            self._shutdown(name, handle)
        self.hypervisor.delete_machine(handle)
        log("SUCCESS", f"Destroyed node {name}")

    def reboot_node(self, name: str) -> None:
        handle = self._require_node(name)
        if self.hypervisor.get_state(handle) in _ACTIVE_STATES:
            self._shutdown(name, handle)
        self.hypervisor.start_machine(handle, self.execution_type)
        log("INFO", f"Rebooted node {name}")

    def suspend_node(self, name: str) -> None:
        handle = self._require_node(name)
        if self.hypervisor.get_state(handle) is MachineState.POWERED_OFF:
            return
        self._shutdown(name, handle)
        log("INFO", f"Suspended node {name}")

    def resume_node(self, name: str) -> None:
        handle = self._require_node(name)
        if self.hypervisor.get_state(handle) is MachineState.RUNNING:
            return
        self.hypervisor.start_machine(handle, self.execution_type)
        log("INFO", f"Resumed node {name}")

    # Masters

    def destroy_master(self, image_id: str) -> None:
        """Drop the cached master for ``image_id`` and delete its machine."""
        self.cache.invalidate(image_id)
        handle = self.hypervisor.find_by_name(master_name(image_id))
        if handle is None:
            raise NotFoundError(f"No master machine for image '{image_id}'", image_id=image_id)
        if self.hypervisor.get_state(handle) in _ACTIVE_STATES:
            self.hypervisor.stop_machine(handle)
        self.hypervisor.delete_machine(handle)
        if self.catalogue.unregister(image_id):
            log("INFO", f"Forgot captured image {image_id}")
        log("SUCCESS", f"Destroyed master {master_name(image_id)}")

    def create_image(self, node_name: str, image_id: str) -> ImageSpec:
        """Capture a node as a new image whose master is a full clone of the node.

        The node is powered off for the copy and started again afterwards if
        it was running. The new master carries the same tags as an installed
        one, so later processes pick it up through ``create_node``.
        """
        if not IMAGE_ID_RE.match(image_id):
            raise ConfigError(f"Invalid image id '{image_id}'", image_id=image_id)
        if self.get_image(image_id) is not None:
            raise NameCollisionError(f"Image '{image_id}' already exists", image_id=image_id)
        name = master_name(image_id)
        if self.hypervisor.find_by_name(name) is not None:
            raise NameCollisionError(f"A machine named '{name}' already exists", image_id=image_id)
        handle = self._require_node(node_name)
        parent_id = self.hypervisor.get_tag(handle, NODE_IMAGE_KEY)
        if self.get_image(parent_id) is None:
            self._restore_captured(parent_id)
        parent = self.catalogue.get(parent_id)

        was_running = self.hypervisor.get_state(handle) in _ACTIVE_STATES
        if was_running:
            self._shutdown(node_name, handle)
        log("INFO", f"Capturing node {node_name} as image {image_id}")
        try:
            master_handle = self.hypervisor.clone_machine(handle, name, CloneMode.FULL)
        finally:
            if was_running:
                self.hypervisor.start_machine(handle, self.execution_type)

        try:
            master = self._promote_to_master(parent, image_id, master_handle)
            spec = self._register_captured(image_id, parent)
            self.cache.seed(master)
        except BaseException:
            self._remove_capture(name, master_handle)
            raise
        log("SUCCESS", f"Image {image_id} captured from node {node_name}")
        return spec

    def _promote_to_master(self, parent: ImageSpec, image_id: str, handle: str) -> Master:
        info = self.hypervisor.get_info(handle)
        if not info.disk_paths:
            raise invariant_error("Captured machine has no hard disk", image_id=image_id)
        if any(rule.name == SSH_FORWARD_RULE for rule in info.port_forwards):
            self.hypervisor.remove_port_forward(handle, SSH_FORWARD_RULE)
        # clones inherit the node's extra data
        for key in (NODE_IMAGE_KEY, NODE_HARDWARE_KEY, NODE_SSH_PORT_KEY):
            self.hypervisor.set_tag(handle, key, None)
        self.hypervisor.set_tag(handle, DERIVED_FROM_KEY, parent.id)
        self.hypervisor.set_tag(handle, INSTALL_STATE_KEY, INSTALL_STATE_COMPLETE)
        return Master(
            image_id=image_id,
            machine_handle=handle,
            source_hard_disk_path=info.disk_paths[0],
            login_credentials=parent.login_credentials,
        )

    def _register_captured(self, image_id: str, parent: ImageSpec) -> ImageSpec:
        spec = dataclasses.replace(
            parent,
            id=image_id,
            name=image_id,
            description=f"Captured from a node of {parent.id}",
        )
        self.catalogue.register(spec)
        return spec

    def _restore_captured(self, image_id: str) -> None:
        """Re-register an image captured by an earlier process from its master's tags."""
        handle = self.hypervisor.find_by_name(master_name(image_id))
        if handle is None or self.hypervisor.get_tag(handle, INSTALL_STATE_KEY) != INSTALL_STATE_COMPLETE:
            return
        parent_id = self.hypervisor.get_tag(handle, DERIVED_FROM_KEY)
        if not parent_id:
            return
        if self.get_image(parent_id) is None:
            self._restore_captured(parent_id)
        self._register_captured(image_id, self.catalogue.get(parent_id))

    def _remove_capture(self, name: str, handle: str) -> None:
        try:
            self.hypervisor.delete_machine(handle)
        except ProviderError as exc:
            log("WARN", f"Could not remove partially captured master {name}: {exc}")

    # Helpers

    def _find_node(self, name: str) -> Optional[str]:
        handle = self.hypervisor.find_by_name(name)
        if handle is None or not self.hypervisor.get_tag(handle, NODE_IMAGE_KEY):
            return None
        return handle

    def _require_node(self, name: str) -> str:
        handle = self._find_node(name)
        if handle is None:
            raise NotFoundError(f"Node '{name}' not found", node_name=name)
        return handle

    def _credentials(self, image_id: Optional[str]):
        if not image_id:
            return None
        try:
            return self.catalogue.get(image_id).login_credentials
        except CatalogueError:
            return None

    def _shutdown(self, name: str, handle: str) -> None:
        """ACPI shutdown with a bounded wait, then a hard power-off."""
        self.hypervisor.acpi_shutdown(handle)
        stopped = wait_until(
            lambda: self.hypervisor.get_state(handle) is MachineState.POWERED_OFF,
            self.shutdown_timeout,
            clock=self._clock,
            sleep=self._sleep,
        )
        if not stopped:
            log("WARN", f"Node {name} did not power off within {self.shutdown_timeout:.0f}s; forcing")
            self.hypervisor.stop_machine(handle)
