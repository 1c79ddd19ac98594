"""Configuration loading and environment variable parsing for vbox-compute."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vbox_compute.constants import (
    DEFAULT_CATALOGUE_PATH,
    DEFAULT_CONFIG_PATH,
    DEFAULT_DOWNLOAD_DIR,
    DEFAULT_HARDWARE_PROFILES,
    DEFAULT_IMAGE_OS_ARCH,
    DEFAULT_IMAGE_OS_FAMILY,
    DEFAULT_IMAGE_OS_VERSION,
    DEFAULT_MASTERS_DIR,
    DEFAULT_VBOXMANAGE,
    NAT_HOST_ADDRESS,
    SUPPORTED_NIC_KINDS,
    TRUTHY,
)
from vbox_compute.exceptions import ConfigError
from vbox_compute.models import CloneMode, ExecutionType, Hardware, NetworkAttachment
from vbox_compute.utils import get_env, log, parse_duration, parse_int

# (yaml section, yaml key, environment variable)
_ENV_OVERRIDES = [
    ("hypervisor", "endpoint", "VBOX_ENDPOINT"),
    ("download", "dir", "VBOX_DOWNLOAD_DIR"),
    ("download", "retries", "VBOX_DOWNLOAD_RETRIES"),
    ("masters", "dir", "VBOX_MASTERS_DIR"),
    ("master", "keepPartials", "VBOX_KEEP_PARTIALS"),
    ("preseed", "bindHost", "VBOX_PRESEED_BIND_HOST"),
    ("preseed", "port", "VBOX_PRESEED_PORT"),
    ("preseed", "guestHost", "VBOX_PRESEED_GUEST_HOST"),
    ("timeouts", "install", "VBOX_TIMEOUT_INSTALL"),
    ("timeouts", "minInstall", "VBOX_TIMEOUT_MIN_INSTALL"),
    ("timeouts", "nodeRunning", "VBOX_TIMEOUT_NODE_RUNNING"),
    ("timeouts", "shutdown", "VBOX_TIMEOUT_SHUTDOWN"),
    ("execution", "type", "VBOX_EXECUTION_TYPE"),
    ("clone", "defaultMode", "VBOX_CLONE_MODE"),
    ("catalogue", "path", "VBOX_CATALOGUE"),
    ("ssh", "publicKeyPath", "VBOX_SSH_PUBKEY"),
]

_URL_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


@dataclass
class ProviderConfig:
    vboxmanage: str = DEFAULT_VBOXMANAGE
    download_dir: Path = DEFAULT_DOWNLOAD_DIR
    download_retries: int = 3
    masters_dir: Path = DEFAULT_MASTERS_DIR
    keep_partials: bool = False
    preseed_bind_host: str = "0.0.0.0"
    preseed_port: int = 0
    preseed_guest_host: str = NAT_HOST_ADDRESS
    install_timeout: float = 45 * 60.0
    min_install_time: float = 60.0
    node_running_timeout: float = 5 * 60.0
    shutdown_timeout: float = 60.0
    execution_type: ExecutionType = ExecutionType.HEADLESS
    default_clone_mode: CloneMode = CloneMode.LINKED
    catalogue_path: Path = DEFAULT_CATALOGUE_PATH
    default_os_family: str = DEFAULT_IMAGE_OS_FAMILY
    default_os_version: str = DEFAULT_IMAGE_OS_VERSION
    default_os_arch: str = DEFAULT_IMAGE_OS_ARCH
    ssh_public_key: Optional[str] = None
    hardware_profiles: Dict[str, Hardware] = field(default_factory=dict)

    def __post_init__(self):
        if not self.hardware_profiles:
            self.hardware_profiles = parse_hardware_profiles(DEFAULT_HARDWARE_PROFILES)


def _as_bool(name: str, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return bool(raw)
    lowered = str(raw).strip().lower()
    if lowered in TRUTHY:
        return True
    if lowered in {"0", "false", "no", "off", ""}:
        return False
    raise ConfigError(f"{name} must be a boolean (got '{raw}')")


def _as_enum(name: str, raw: Any, enum_cls):
    try:
        return enum_cls(str(raw).strip().upper())
    except ValueError:
        allowed = "|".join(member.value for member in enum_cls)
        raise ConfigError(f"Unsupported {name} '{raw}'. Expected one of {allowed}")


def parse_hardware_profiles(raw: Any) -> Dict[str, Hardware]:
    if not isinstance(raw, dict):
        raise ConfigError("hardware.profiles must be a mapping of profile name to settings")
    profiles: Dict[str, Hardware] = {}
    for name, settings in raw.items():
        if not isinstance(settings, dict):
            raise ConfigError(f"Hardware profile '{name}' must be a mapping")
        unknown = set(settings) - {"cpus", "memory", "disk", "nics"}
        if unknown:
            raise ConfigError(f"Hardware profile '{name}' has unknown keys: {', '.join(sorted(unknown))}")
        nics_raw = settings.get("nics") or [{"kind": "nat"}]
        if isinstance(nics_raw, (str, dict)):
            nics_raw = [nics_raw]
        if not isinstance(nics_raw, list):
            raise ConfigError(f"Hardware profile '{name}': nics must be a list")
        attachments = []
        for nic in nics_raw:
            if isinstance(nic, str):
                nic = {"kind": nic}
            if not isinstance(nic, dict):
                raise ConfigError(
                    f"Hardware profile '{name}': NIC entries must be a kind or a mapping, got {nic!r}"
                )
            kind = str(nic.get("kind", "nat")).lower()
            if kind not in SUPPORTED_NIC_KINDS:
                supported = ", ".join(sorted(SUPPORTED_NIC_KINDS))
                raise ConfigError(f"Hardware profile '{name}': unsupported NIC kind '{kind}'. Supported: {supported}")
            interface = nic.get("interface")
            if kind in {"hostonly", "bridged"} and not interface:
                raise ConfigError(f"Hardware profile '{name}': NIC kind '{kind}' requires an interface")
            attachments.append(NetworkAttachment(kind=kind, interface=interface))
        profiles[str(name)] = Hardware(
            id=str(name),
            cpu_count=parse_int(f"hardware.profiles.{name}.cpus", settings.get("cpus", 1), min_val=1),
            memory_mib=parse_int(f"hardware.profiles.{name}.memory", settings.get("memory", 1024), min_val=4),
            disk_mib=parse_int(f"hardware.profiles.{name}.disk", settings.get("disk", 0), min_val=0),
            network_attachments=tuple(attachments),
        )
    return profiles


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Configuration file {path} contains invalid YAML: {exc}")
    except OSError as exc:
        raise ConfigError(f"Cannot read configuration file {path}: {exc}")
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file {path} must contain a YAML mapping")
    return data


def load_config(path: Optional[Path] = None) -> ProviderConfig:
    """Build a ProviderConfig from the YAML file (optional) and environment overrides."""
    if path is None:
        env_path = get_env("VBOX_COMPUTE_CONFIG")
        path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH
        data = _read_config_file(path)
    else:
        if not path.exists():
            raise ConfigError(f"Configuration file missing: {path}")
        data = _read_config_file(path)

    def section(name: str) -> Dict[str, Any]:
        value = data.get(name) or {}
        if not isinstance(value, dict):
            raise ConfigError(f"Configuration section '{name}' must be a mapping")
        return value

    settings: Dict[str, Dict[str, Any]] = {}
    for name in ("hypervisor", "download", "masters", "master", "preseed", "timeouts",
                 "execution", "clone", "catalogue", "image", "ssh", "hardware"):
        settings[name] = dict(section(name))

    for section_name, key, env_name in _ENV_OVERRIDES:
        raw = get_env(env_name)
        if raw is not None and raw.strip():
            settings[section_name][key] = raw.strip()

    cfg = ProviderConfig()

    endpoint = settings["hypervisor"].get("endpoint")
    if endpoint:
        endpoint = str(endpoint).strip()
        if _URL_RE.match(endpoint):
            raise ConfigError(
                f"hypervisor.endpoint '{endpoint}' looks like a web-service URL; "
                "only the local VBoxManage binding is supported"
            )
        cfg.vboxmanage = endpoint

    if "dir" in settings["download"]:
        cfg.download_dir = Path(str(settings["download"]["dir"])).expanduser()
    if "retries" in settings["download"]:
        cfg.download_retries = parse_int("download.retries", settings["download"]["retries"], min_val=1)
    if "dir" in settings["masters"]:
        cfg.masters_dir = Path(str(settings["masters"]["dir"])).expanduser()
    if "keepPartials" in settings["master"]:
        cfg.keep_partials = _as_bool("master.keepPartials", settings["master"]["keepPartials"])

    preseed = settings["preseed"]
    if "bindHost" in preseed:
        cfg.preseed_bind_host = str(preseed["bindHost"]).strip()
    if "port" in preseed:
        cfg.preseed_port = parse_int("preseed.port", preseed["port"], min_val=0, max_val=65535)
    if "guestHost" in preseed:
        cfg.preseed_guest_host = str(preseed["guestHost"]).strip()

    timeouts = settings["timeouts"]
    if "install" in timeouts:
        cfg.install_timeout = parse_duration("timeouts.install", timeouts["install"])
    if "minInstall" in timeouts:
        cfg.min_install_time = parse_duration("timeouts.minInstall", timeouts["minInstall"])
    if "nodeRunning" in timeouts:
        cfg.node_running_timeout = parse_duration("timeouts.nodeRunning", timeouts["nodeRunning"])
    if "shutdown" in timeouts:
        cfg.shutdown_timeout = parse_duration("timeouts.shutdown", timeouts["shutdown"])
    if cfg.min_install_time > cfg.install_timeout:
        raise ConfigError("timeouts.minInstall must not exceed timeouts.install")

    if "type" in settings["execution"]:
        cfg.execution_type = _as_enum("execution.type", settings["execution"]["type"], ExecutionType)
    if "defaultMode" in settings["clone"]:
        cfg.default_clone_mode = _as_enum("clone.defaultMode", settings["clone"]["defaultMode"], CloneMode)
    if "path" in settings["catalogue"]:
        cfg.catalogue_path = Path(str(settings["catalogue"]["path"])).expanduser()

    image = settings["image"]
    cfg.default_os_family = str(image.get("osFamily", cfg.default_os_family))
    cfg.default_os_version = str(image.get("osVersion", cfg.default_os_version))
    cfg.default_os_arch = str(image.get("osArch", cfg.default_os_arch))

    pubkey_path = settings["ssh"].get("publicKeyPath")
    if pubkey_path:
        candidate = Path(str(pubkey_path)).expanduser()
        if not candidate.is_file():
            raise ConfigError(f"ssh.publicKeyPath not found: {candidate}")
        cfg.ssh_public_key = candidate.read_text().strip()

    profiles_raw = settings["hardware"].get("profiles")
    if profiles_raw is not None:
        if not isinstance(profiles_raw, dict):
            raise ConfigError("hardware.profiles must be a mapping of profile name to settings")
        merged = dict(DEFAULT_HARDWARE_PROFILES)
        merged.update(profiles_raw)
        cfg.hardware_profiles = parse_hardware_profiles(merged)

    log("DEBUG", f"Configuration loaded from {path if data else 'defaults'}")
    return cfg
