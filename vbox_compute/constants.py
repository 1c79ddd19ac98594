"""Global constants and default paths for vbox-compute."""

from __future__ import annotations

import os
import re
from pathlib import Path

_HOME = Path(os.path.expanduser("~"))

DEFAULT_CONFIG_PATH = _HOME / ".config" / "vbox-compute" / "config.yaml"
DEFAULT_CATALOGUE_PATH = _HOME / ".config" / "vbox-compute" / "images.yaml"
DEFAULT_DOWNLOAD_DIR = _HOME / ".cache" / "vbox-compute" / "isos"
DEFAULT_MASTERS_DIR = _HOME / ".local" / "share" / "vbox-compute" / "masters"

DEFAULT_VBOXMANAGE = "VBoxManage"

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# Machine naming and extra-data tags persisted in the hypervisor
MASTER_PREFIX = "master-"
INSTALL_STATE_KEY = "install-state"
INSTALL_STATE_COMPLETE = "complete"
NODE_IMAGE_KEY = "vbox-compute/image"
NODE_SSH_PORT_KEY = "vbox-compute/ssh-port"
NODE_HARDWARE_KEY = "vbox-compute/hardware"
DERIVED_FROM_KEY = "vbox-compute/derived-from"
MASTER_SNAPSHOT_NAME = "master-snapshot"
SSH_FORWARD_RULE = "guestssh"

# VirtualBox user-mode NAT puts the host at this address
NAT_HOST_ADDRESS = "10.0.2.2"
LOOPBACK = "127.0.0.1"

PRESEED_PATH = "/preseed.cfg"

# Cadence of every readiness/install poll loop, in seconds
POLL_INTERVAL = 0.5

# Floor for one SSH handshake attempt when little of the deadline remains
SSH_MIN_ATTEMPT_TIMEOUT = 0.5

# Minimal hardware profile used while installing a master
INSTALL_CPUS = 1
INSTALL_MEMORY_MIB = 1024
INSTALL_DISK_MIB = 8192

DEFAULT_IMAGE_OS_FAMILY = "ubuntu"
DEFAULT_IMAGE_OS_VERSION = ".*"
DEFAULT_IMAGE_OS_ARCH = "x86_64"

DEFAULT_HARDWARE_PROFILES = {
    "small": {"cpus": 1, "memory": 1024, "disk": 8192},
    "medium": {"cpus": 2, "memory": 2048, "disk": 16384},
    "large": {"cpus": 4, "memory": 4096, "disk": 32768},
}

# VirtualBox guest OS type identifiers by (family, 64-bit)
OS_TYPE_HINTS = {
    ("ubuntu", True): "Ubuntu_64",
    ("ubuntu", False): "Ubuntu",
    ("debian", True): "Debian_64",
    ("debian", False): "Debian",
    ("centos", True): "RedHat_64",
    ("centos", False): "RedHat",
    ("rhel", True): "RedHat_64",
    ("rhel", False): "RedHat",
    ("fedora", True): "Fedora_64",
    ("fedora", False): "Fedora",
}

ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "i386": "x86",
    "i686": "x86",
}

SUPPORTED_NIC_KINDS = {"nat", "hostonly", "bridged", "intnet"}

DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")

IMAGE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

MACHINE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

_SENSITIVE_FIELDS = {"password", "private_key"}
