"""Construct the provider's components from a ProviderConfig."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from vbox_compute.adapter import ComputeAdapter
from vbox_compute.cache import MasterCache
from vbox_compute.catalogue import ImageCatalogue
from vbox_compute.config import ProviderConfig
from vbox_compute.fetcher import FileFetcher
from vbox_compute.hypervisor import Hypervisor, VBoxManageHypervisor
from vbox_compute.master import MasterBuilder
from vbox_compute.node import NodeCreator
from vbox_compute.preseed import PreseedServer
from vbox_compute.ssh import SshClient, SshClientFactory


@dataclass
class Provider:
    config: ProviderConfig
    hypervisor: Hypervisor
    catalogue: ImageCatalogue
    fetcher: FileFetcher
    preseed_server: PreseedServer
    builder: MasterBuilder
    cache: MasterCache
    node_creator: NodeCreator
    adapter: ComputeAdapter

    def close(self) -> None:
        self.preseed_server.stop()


def build_provider(
    config: ProviderConfig,
    hypervisor: Optional[Hypervisor] = None,
    ssh_client_factory: SshClientFactory = SshClient,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> Provider:
    """Wire every component with explicit collaborators.

    ``hypervisor`` and ``ssh_client_factory`` default to the VBoxManage
    binding and the paramiko client; ``clock`` and ``sleep`` drive every
    poll loop.
    """
    if hypervisor is None:
        hypervisor = VBoxManageHypervisor(config.vboxmanage)
    catalogue = ImageCatalogue(config.catalogue_path)
    fetcher = FileFetcher(config.download_dir, retries=config.download_retries)
    preseed_server = PreseedServer(
        bind_host=config.preseed_bind_host,
        port=config.preseed_port,
        guest_host=config.preseed_guest_host,
    )
    builder = MasterBuilder(
        hypervisor,
        fetcher,
        preseed_server,
        ssh_client_factory=ssh_client_factory,
        masters_dir=config.masters_dir,
        install_timeout=config.install_timeout,
        min_install_time=config.min_install_time,
        shutdown_timeout=config.shutdown_timeout,
        keep_partials=config.keep_partials,
        ssh_public_key=config.ssh_public_key,
        clock=clock,
        sleep=sleep,
    )
    cache = MasterCache(builder)
    node_creator = NodeCreator(
        hypervisor,
        catalogue,
        cache,
        ssh_client_factory=ssh_client_factory,
        node_running_timeout=config.node_running_timeout,
        execution_type=config.execution_type,
        clock=clock,
        sleep=sleep,
    )
    adapter = ComputeAdapter(
        hypervisor,
        catalogue,
        cache,
        node_creator,
        config.hardware_profiles,
        default_clone_mode=config.default_clone_mode,
        execution_type=config.execution_type,
        shutdown_timeout=config.shutdown_timeout,
        default_image_query={
            "os_family": config.default_os_family,
            "os_version": config.default_os_version,
            "os_arch": config.default_os_arch,
        },
        clock=clock,
        sleep=sleep,
    )
    return Provider(
        config=config,
        hypervisor=hypervisor,
        catalogue=catalogue,
        fetcher=fetcher,
        preseed_server=preseed_server,
        builder=builder,
        cache=cache,
        node_creator=node_creator,
        adapter=adapter,
    )
