"""CLI entry points for vbox-compute."""

from __future__ import annotations

import argparse
import dataclasses
from pathlib import Path
from typing import List, Optional

from vbox_compute.config import load_config
from vbox_compute.constants import _SENSITIVE_FIELDS
from vbox_compute.exceptions import ProviderError, exit_code_for
from vbox_compute.models import CloneMode, NodeMetadata
from vbox_compute.provider import Provider, build_provider
from vbox_compute.utils import log, set_verbose


def print_nodes(nodes: List[NodeMetadata]) -> None:
    if not nodes:
        log("INFO", "No nodes")
        return
    width = max(len(node.name) for node in nodes)
    for node in sorted(nodes, key=lambda n: n.name):
        ssh = f"{node.ssh_host}:{node.ssh_port}" if node.ssh_port else "-"
        print(f"  {node.name:<{width}}  {node.state.value:<12}  image={node.image_id}  ssh={ssh}")


def show_node(node: NodeMetadata) -> None:
    """Print every field of a node, masking secrets in its credentials."""
    for field in dataclasses.fields(node):
        value = getattr(node, field.name)
        if field.name == "login_credentials" and value is not None:
            print(f"  {field.name}:")
            for sub_field in dataclasses.fields(value):
                sub_value = getattr(value, sub_field.name)
                if sub_field.name in _SENSITIVE_FIELDS and sub_value:
                    sub_value = "********"
                print(f"    {sub_field.name}: {sub_value}")
        elif field.name == "hardware":
            print(f"  {field.name}: {value.id} (cpus={value.cpu_count}, memory={value.memory_mib} MiB)")
        elif field.name == "state":
            print(f"  {field.name}: {value.value}")
        else:
            print(f"  {field.name}: {value}")


def list_images(provider: Provider) -> None:
    images = provider.adapter.list_images()
    if not images:
        log("WARN", "No images found")
        return
    width = max(len(spec.id) for spec in images)
    for spec in sorted(images, key=lambda s: s.id):
        built = "built" if provider.cache.peek(spec.id) else ""
        print(f"  {spec.id:<{width}}  {spec.name}  (family={spec.os_family}, version={spec.os_version}, "
              f"arch={spec.os_arch}) {built}".rstrip())


def list_hardware(provider: Provider) -> None:
    for hardware in provider.adapter.list_hardware_profiles():
        nics = ",".join(nic.kind for nic in hardware.network_attachments)
        print(f"  {hardware.id:<8}  cpus={hardware.cpu_count}  memory={hardware.memory_mib} MiB  "
              f"disk={hardware.disk_mib} MiB  nics={nics}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vbox-compute", description="VirtualBox compute provider")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.yaml")
    parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging")
    groups = parser.add_subparsers(dest="group", required=True)

    node = groups.add_parser("node", help="Manage nodes").add_subparsers(dest="action", required=True)
    node.add_parser("list", help="List nodes")
    create = node.add_parser("create", help="Clone and start a node")
    create.add_argument("--name", required=True)
    create.add_argument("--image", default=None, help="Image id (default: the configured default image)")
    create.add_argument("--hardware", default="small", help="Hardware profile")
    create.add_argument("--clone", choices=["linked", "full"], default=None)
    for action in ("destroy", "reboot", "suspend", "resume", "show"):
        sub = node.add_parser(action, help=f"{action.capitalize()} a node")
        sub.add_argument("name")

    image = groups.add_parser("image", help="Inspect and extend the image catalogue").add_subparsers(
        dest="action", required=True
    )
    image.add_parser("list", help="List catalogue images")
    capture = image.add_parser("create", help="Capture a node as a new image")
    capture.add_argument("--node", required=True, help="Node to capture")
    capture.add_argument("--id", required=True, dest="image_id", help="Id of the new image")

    hardware = groups.add_parser("hardware", help="Inspect hardware profiles").add_subparsers(
        dest="action", required=True
    )
    hardware.add_parser("list", help="List hardware profiles")

    master = groups.add_parser("master", help="Manage golden masters").add_subparsers(dest="action", required=True)
    destroy_master = master.add_parser("destroy", help="Delete the master of an image")
    destroy_master.add_argument("image_id")
    return parser


def dispatch(args: argparse.Namespace, provider: Provider) -> int:
    adapter = provider.adapter
    if args.group == "image" and args.action == "list":
        list_images(provider)
        return 0
    if args.group == "hardware":
        list_hardware(provider)
        return 0

    provider.hypervisor.ensure_available()
    if args.group == "image":
        spec = adapter.create_image(args.node, args.image_id)
        print(f"  {spec.id}  {spec.description}")
        return 0
    if args.group == "master":
        adapter.destroy_master(args.image_id)
        return 0

    if args.action == "list":
        print_nodes(adapter.list_nodes())
    elif args.action == "create":
        clone_mode = CloneMode(args.clone.upper()) if args.clone else None
        result = adapter.create_node(args.name, args.image, args.hardware, clone_mode)
        show_node(result.node)
    elif args.action == "show":
        node = adapter.get_node(args.name)
        if node is None:
            log("ERROR", f"Node '{args.name}' not found")
            return 2
        show_node(node)
    else:
        getattr(adapter, f"{args.action}_node")(args.name)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        set_verbose(True)

    try:
        config = load_config(args.config)
    except ProviderError as exc:
        log("ERROR", str(exc))
        return exit_code_for(exc)

    provider = build_provider(config)
    try:
        return dispatch(args, provider)
    except ProviderError as exc:
        log("ERROR", str(exc))
        return exit_code_for(exc)
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        provider.close()
