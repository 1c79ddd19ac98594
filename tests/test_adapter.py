"""End-to-end tests for the compute façade over the in-memory hypervisor."""

from __future__ import annotations

import threading
from unittest.mock import patch

import pytest
import yaml

from vbox_compute.constants import DERIVED_FROM_KEY, INSTALL_STATE_COMPLETE, INSTALL_STATE_KEY
from vbox_compute.exceptions import (
    ConfigError,
    HypervisorError,
    IntegrityError,
    NameCollisionError,
    NodeUnreachableError,
    NotFoundError,
)
from vbox_compute.hypervisor import MachineState
from vbox_compute.models import CloneMode, NodeState
from vbox_compute.provider import build_provider

IMAGE_ID = "ubuntu-22-amd64"


def masters(hypervisor):
    return [m for m in hypervisor.machines.values() if m.name.startswith("master-")]


class TestCreateNode:
    def test_happy_path(self, provider, hypervisor):
        result = provider.adapter.create_node("n1", IMAGE_ID, "medium")
        assert result.node.name == "n1"
        assert result.node.state is NodeState.RUNNING
        assert result.node.image_id == IMAGE_ID
        assert (result.node.hardware.cpu_count, result.node.hardware.memory_mib) == (2, 2048)

        built = masters(hypervisor)
        assert [m.name for m in built] == ["master-ubuntu-22-amd64"]
        assert built[0].tags[INSTALL_STATE_KEY] == INSTALL_STATE_COMPLETE
        assert provider.cache.peek(IMAGE_ID) is not None

    def test_concurrent_creates_share_one_build(self, provider, hypervisor):
        results, errors = [], []

        def create(name):
            try:
                results.append(provider.adapter.create_node(name, IMAGE_ID, "small"))
            except Exception as exc:
                errors.append(exc)

        with patch.object(provider.builder, "build", wraps=provider.builder.build) as mock_build:
            threads = [threading.Thread(target=create, args=(name,)) for name in ("n1", "n2")]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=30)

        assert errors == []
        assert mock_build.call_count == 1
        assert sorted(r.node.name for r in results) == ["n1", "n2"]
        assert len(masters(hypervisor)) == 1

    def test_second_node_reuses_master(self, provider, hypervisor):
        provider.adapter.create_node("n1", IMAGE_ID)
        provider.adapter.create_node("n2", IMAGE_ID)
        assert len(hypervisor.calls_to("create_machine")) == 1
        assert len(hypervisor.calls_to("clone_machine")) == 2

    def test_default_clone_mode_and_image(self, provider, hypervisor):
        provider.adapter.create_node("n1")
        (_, _source, _name, mode), = hypervisor.calls_to("clone_machine")
        assert mode is CloneMode.LINKED
        assert provider.adapter.get_node("n1").image_id == IMAGE_ID

    def test_integrity_failure(self, provider, hypervisor, provider_config, iso_file):
        data = yaml.safe_load(provider_config.catalogue_path.read_text())
        data["images"][0]["iso_sha256"] = "f" * 64
        provider_config.catalogue_path.write_text(yaml.safe_dump(data))

        with pytest.raises(IntegrityError) as exc:
            provider.adapter.create_node("n1", IMAGE_ID)
        assert exc.value.image_id == IMAGE_ID
        assert hypervisor.machines == {}
        assert provider.cache.peek(IMAGE_ID) is None

    def test_ssh_never_responds(self, provider, hypervisor, fake_ssh, clock):
        hypervisor.add_master(IMAGE_ID)
        fake_ssh.responds = False
        with pytest.raises(NodeUnreachableError) as exc:
            provider.adapter.create_node("n1", IMAGE_ID)
        assert exc.value.node_name == "n1"
        assert 10.0 <= clock.now <= 10.5
        assert hypervisor.by_name("n1") is not None

        provider.adapter.destroy_node("n1")
        assert hypervisor.by_name("n1") is None

    def test_name_collision(self, provider, hypervisor):
        provider.adapter.create_node("n1", IMAGE_ID)
        with pytest.raises(NameCollisionError):
            provider.adapter.create_node("n1", IMAGE_ID)
        assert len(hypervisor.calls_to("clone_machine")) == 1

    def test_unknown_hardware_profile(self, provider):
        with pytest.raises(NotFoundError, match="Unknown hardware profile 'huge'"):
            provider.adapter.create_node("n1", IMAGE_ID, "huge")


class TestNodeQueries:
    @pytest.mark.parametrize(
        "state, expected",
        [
            (MachineState.ABORTED, NodeState.ERROR),
            (MachineState.DELETING_SNAPSHOT_ONLINE, NodeState.PENDING),
            (MachineState.NULL, NodeState.UNRECOGNIZED),
        ],
    )
    def test_reported_states(self, provider, hypervisor, state, expected):
        provider.adapter.create_node("n1", IMAGE_ID)
        hypervisor.by_name("n1").state = state
        assert provider.adapter.get_node("n1").state is expected

    def test_list_nodes_excludes_masters(self, provider, hypervisor):
        hypervisor.add_machine("unrelated")
        provider.adapter.create_node("n1", IMAGE_ID)
        nodes = provider.adapter.list_nodes()
        assert [node.name for node in nodes] == ["n1"]
        assert nodes[0].login_credentials.username == "toor"

    def test_get_unknown_node(self, provider):
        assert provider.adapter.get_node("ghost") is None

    def test_master_is_not_a_node(self, provider, hypervisor):
        hypervisor.add_master(IMAGE_ID)
        assert provider.adapter.get_node("master-ubuntu-22-amd64") is None


class TestLifecycle:
    def test_destroy_running_node(self, provider, hypervisor):
        provider.adapter.create_node("n1", IMAGE_ID)
        handle = hypervisor.find_by_name("n1")
        provider.adapter.destroy_node("n1")
        assert ("acpi_shutdown", handle) in hypervisor.calls
        assert ("stop_machine", handle) not in hypervisor.calls
        assert ("delete_machine", handle) in hypervisor.calls
        assert provider.adapter.get_node("n1") is None

    def test_destroy_forces_power_off_after_timeout(self, provider, hypervisor, clock):
        provider.adapter.create_node("n1", IMAGE_ID)
        machine = hypervisor.by_name("n1")
        machine.ignore_acpi = True
        provider.adapter.destroy_node("n1")
        assert ("stop_machine", machine.handle) in hypervisor.calls
        assert hypervisor.by_name("n1") is None

    def test_destroy_unknown(self, provider):
        with pytest.raises(NotFoundError) as exc:
            provider.adapter.destroy_node("ghost")
        assert exc.value.node_name == "ghost"

    def test_reboot(self, provider, hypervisor):
        provider.adapter.create_node("n1", IMAGE_ID)
        handle = hypervisor.find_by_name("n1")
        provider.adapter.reboot_node("n1")
        names = [call[0] for call in hypervisor.calls if len(call) > 1 and call[1] == handle]
        assert names[-2:] == ["acpi_shutdown", "start_machine"]
        assert provider.adapter.get_node("n1").state is NodeState.RUNNING

    def test_suspend_and_resume(self, provider):
        provider.adapter.create_node("n1", IMAGE_ID)
        provider.adapter.suspend_node("n1")
        assert provider.adapter.get_node("n1").state is NodeState.SUSPENDED
        provider.adapter.resume_node("n1")
        assert provider.adapter.get_node("n1").state is NodeState.RUNNING

    @pytest.mark.parametrize("operation", ["reboot_node", "suspend_node", "resume_node"])
    def test_unknown_node_operations(self, provider, operation):
        with pytest.raises(NotFoundError):
            getattr(provider.adapter, operation)("ghost")


class TestImagesAndMasters:
    def test_list_images(self, provider):
        assert sorted(spec.id for spec in provider.adapter.list_images()) == ["debian-12-amd64", IMAGE_ID]

    def test_get_image(self, provider):
        assert provider.adapter.get_image(IMAGE_ID).os_family == "ubuntu"
        assert provider.adapter.get_image("nope") is None

    def test_default_image(self, provider):
        assert provider.adapter.default_image().id == IMAGE_ID

    def test_hardware_profiles(self, provider):
        assert [hw.id for hw in provider.adapter.list_hardware_profiles()] == ["small", "medium", "large"]

    def test_destroy_master_forces_rebuild(self, provider, hypervisor):
        provider.adapter.create_node("n1", IMAGE_ID)
        provider.adapter.destroy_master(IMAGE_ID)
        assert masters(hypervisor) == []
        assert provider.cache.peek(IMAGE_ID) is None

        provider.adapter.create_node("n2", IMAGE_ID)
        assert len(hypervisor.calls_to("create_machine")) == 2

    def test_destroy_missing_master(self, provider):
        with pytest.raises(NotFoundError) as exc:
            provider.adapter.destroy_master(IMAGE_ID)
        assert exc.value.image_id == IMAGE_ID


class TestCreateImage:
    def test_captures_running_node(self, provider, hypervisor):
        provider.adapter.create_node("n1", IMAGE_ID)
        spec = provider.adapter.create_image("n1", "golden")
        assert (spec.id, spec.os_family) == ("golden", "ubuntu")
        assert spec.login_credentials.username == "toor"

        captured = hypervisor.by_name("master-golden")
        assert captured.tags == {INSTALL_STATE_KEY: INSTALL_STATE_COMPLETE, DERIVED_FROM_KEY: IMAGE_ID}
        assert captured.forwards == {}
        (_, source, _name, mode) = hypervisor.calls_to("clone_machine")[-1]
        assert source == hypervisor.by_name("n1").handle
        assert mode is CloneMode.FULL
        assert ("acpi_shutdown", source) in hypervisor.calls
        assert hypervisor.by_name("n1").state is MachineState.RUNNING
        assert [node.name for node in provider.adapter.list_nodes()] == ["n1"]
        assert provider.cache.peek("golden").machine_handle == captured.handle

    def test_nodes_clone_the_captured_master(self, provider, hypervisor):
        provider.adapter.create_node("n1", IMAGE_ID)
        provider.adapter.create_image("n1", "golden")
        node = provider.adapter.create_node("n2", "golden").node
        assert node.image_id == "golden"
        (_, source, _name, _mode) = hypervisor.calls_to("clone_machine")[-1]
        assert source == hypervisor.by_name("master-golden").handle
        assert len(hypervisor.calls_to("create_machine")) == 1
        assert DERIVED_FROM_KEY not in hypervisor.by_name("n2").tags

    def test_captured_image_found_by_later_process(self, provider, provider_config, hypervisor, fake_ssh, clock):
        provider.adapter.create_node("n1", IMAGE_ID)
        provider.adapter.create_image("n1", "golden")

        later = build_provider(provider_config, hypervisor=hypervisor, ssh_client_factory=fake_ssh,
                               clock=clock.monotonic, sleep=clock.sleep)
        try:
            assert later.adapter.get_image("golden") is None
            assert later.adapter.create_node("n2", "golden").node.image_id == "golden"
            assert later.adapter.get_image("golden").description == f"Captured from a node of {IMAGE_ID}"
        finally:
            later.close()
        assert len(hypervisor.calls_to("create_machine")) == 1

    def test_powered_off_node_stays_off(self, provider, hypervisor):
        provider.adapter.create_node("n1", IMAGE_ID)
        provider.adapter.suspend_node("n1")
        provider.adapter.create_image("n1", "golden")
        assert hypervisor.by_name("n1").state is MachineState.POWERED_OFF

    @pytest.mark.parametrize(
        "image_id, error",
        [(IMAGE_ID, NameCollisionError), ("bad id", ConfigError)],
    )
    def test_rejected_image_ids(self, provider, hypervisor, image_id, error):
        provider.adapter.create_node("n1", IMAGE_ID)
        clones = len(hypervisor.calls_to("clone_machine"))
        with pytest.raises(error):
            provider.adapter.create_image("n1", image_id)
        assert len(hypervisor.calls_to("clone_machine")) == clones

    def test_existing_master_machine_collides(self, provider, hypervisor):
        provider.adapter.create_node("n1", IMAGE_ID)
        hypervisor.add_machine("master-golden")
        with pytest.raises(NameCollisionError, match="master-golden"):
            provider.adapter.create_image("n1", "golden")

    def test_unknown_node(self, provider):
        with pytest.raises(NotFoundError):
            provider.adapter.create_image("ghost", "golden")

    def test_failed_capture_is_removed(self, provider, hypervisor):
        provider.adapter.create_node("n1", IMAGE_ID)
        hypervisor.fail_on["remove_port_forward"] = HypervisorError("locked")
        with pytest.raises(HypervisorError, match="locked"):
            provider.adapter.create_image("n1", "golden")
        assert hypervisor.by_name("master-golden") is None
        assert provider.adapter.get_image("golden") is None
        assert hypervisor.by_name("n1").state is MachineState.RUNNING

    def test_destroying_captured_master_forgets_image(self, provider):
        provider.adapter.create_node("n1", IMAGE_ID)
        provider.adapter.create_image("n1", "golden")
        provider.adapter.destroy_master("golden")
        assert provider.adapter.get_image("golden") is None
        assert provider.adapter.get_image(IMAGE_ID) is not None
