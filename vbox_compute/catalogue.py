"""Declarative image catalogue for vbox-compute.

The catalogue is a YAML document with a top-level ``images`` sequence::

    images:
      - id: ubuntu-22-amd64
        name: Ubuntu 22.04 server
        os_family: ubuntu
        os_version: "22.04"
        os_arch: x86_64
        iso: https://releases.ubuntu.com/22.04/ubuntu-22.04-server-amd64.iso
        iso_sha256: 5e38b55d...
        keystroke_sequence: "<Esc><Esc><Enter>/install/vmlinuz preseed/url=${preseed_url} ...<Enter>"
        preseed: |
          d-i passwd/username string ${username}
          ...
        username: toor
        password: password
"""

from __future__ import annotations

import re
import threading
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Set

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vbox_compute.constants import ARCH_ALIASES, IMAGE_ID_RE, OS_TYPE_HINTS
from vbox_compute.exceptions import CatalogueError
from vbox_compute.models import ImageSpec, LoginCredentials
from vbox_compute.utils import log

REQUIRED_FIELDS = ("id", "os_family", "os_version", "os_arch", "iso", "preseed", "username")
OPTIONAL_FIELDS = (
    "name",
    "description",
    "os_type",
    "iso_sha256",
    "keystroke_sequence",
    "password",
    "private_key",
    "authenticate_sudo",
)

_SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def normalize_arch(arch: str) -> str:
    lowered = arch.strip().lower()
    return ARCH_ALIASES.get(lowered, lowered)


def default_os_type(os_family: str, os_arch: str) -> str:
    is_64 = normalize_arch(os_arch) in {"x86_64", "aarch64"}
    return OS_TYPE_HINTS.get((os_family.lower(), is_64), "Linux_64" if is_64 else "Linux")


def parse_image(record: Any, index: int = 0) -> ImageSpec:
    """Turn one catalogue record into an ImageSpec, rejecting malformed input."""
    if not isinstance(record, dict):
        raise CatalogueError(f"Image record #{index} must be a mapping")
    label = record.get("id", f"#{index}")
    missing = [name for name in REQUIRED_FIELDS if record.get(name) in (None, "")]
    if missing:
        raise CatalogueError(f"Image {label} is missing required fields: {', '.join(missing)}")
    unknown = sorted(set(record) - set(REQUIRED_FIELDS) - set(OPTIONAL_FIELDS))
    if unknown:
        raise CatalogueError(f"Image {label} has unknown fields: {', '.join(unknown)}")

    image_id = str(record["id"])
    if not IMAGE_ID_RE.match(image_id):
        raise CatalogueError(f"Invalid image id '{image_id}': use letters, digits, '.', '_' or '-'")

    password = record.get("password")
    private_key = record.get("private_key")
    if password is None and private_key is None:
        raise CatalogueError(f"Image {image_id} needs a password or a private_key for its login user")

    sha256 = record.get("iso_sha256")
    if sha256 is not None:
        sha256 = str(sha256).strip().lower()
        if not _SHA256_RE.match(sha256):
            raise CatalogueError(f"Image {image_id}: iso_sha256 must be 64 hexadecimal characters")

    os_family = str(record["os_family"]).strip().lower()
    os_arch = normalize_arch(str(record["os_arch"]))
    credentials = LoginCredentials(
        username=str(record["username"]),
        password=None if password is None else str(password),
        private_key=None if private_key is None else str(private_key),
        authenticate_sudo=bool(record.get("authenticate_sudo", False)),
    )
    return ImageSpec(
        id=image_id,
        name=str(record.get("name") or image_id),
        description=str(record.get("description") or ""),
        os_family=os_family,
        os_version=str(record["os_version"]).strip(),
        os_arch=os_arch,
        os_type=str(record.get("os_type") or default_os_type(os_family, os_arch)),
        install_medium_uri=str(record["iso"]).strip(),
        install_medium_sha256=sha256,
        preseed_template=str(record["preseed"]),
        keystroke_sequence=record.get("keystroke_sequence"),
        login_credentials=credentials,
    )


def parse_catalogue(text: str, source: str = "<string>") -> Dict[str, ImageSpec]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise CatalogueError(f"Image catalogue {source} contains invalid YAML: {exc}")
    if not isinstance(data, dict) or not isinstance(data.get("images"), list):
        raise CatalogueError(f"Image catalogue {source} must contain a top-level 'images' sequence")

    images: Dict[str, ImageSpec] = {}
    for index, record in enumerate(data["images"]):
        spec = parse_image(record, index)
        if spec.id in images:
            raise CatalogueError(f"Duplicate image id '{spec.id}' in {source}", image_id=spec.id)
        images[spec.id] = spec
    return images


class ImageCatalogue:
    """Loads the image description once and serves it read-only afterwards.

    Images captured from nodes at runtime are layered on top with
    ``register``; entries from the catalogue file are never replaced.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._images: Optional[Mapping[str, ImageSpec]] = None
        self._registered: Set[str] = set()
        self._lock = threading.Lock()

    def load(self) -> Mapping[str, ImageSpec]:
        with self._lock:
            return self._load_locked()

    def _load_locked(self) -> Mapping[str, ImageSpec]:
        if self._images is None:
            if not self.path.exists():
                raise CatalogueError(f"Image catalogue missing: {self.path}")
            try:
                text = self.path.read_text()
            except OSError as exc:
                raise CatalogueError(f"Cannot read image catalogue {self.path}: {exc}")
            images = parse_catalogue(text, str(self.path))
            log("DEBUG", f"Loaded {len(images)} image(s) from {self.path}")
            self._images = MappingProxyType(images)
        return self._images

    def register(self, spec: ImageSpec) -> None:
        with self._lock:
            images = self._load_locked()
            if spec.id in images:
                if spec.id in self._registered and images[spec.id] == spec:
                    return
                raise CatalogueError(f"Image '{spec.id}' already exists", image_id=spec.id)
            self._images = MappingProxyType({**images, spec.id: spec})
            self._registered.add(spec.id)

    def unregister(self, image_id: str) -> bool:
        """Drop a runtime image; returns False for unknown ids and catalogue file entries."""
        with self._lock:
            if image_id not in self._registered:
                return False
            self._registered.discard(image_id)
            images = dict(self._load_locked())
            images.pop(image_id, None)
            self._images = MappingProxyType(images)
            return True

    def get(self, image_id: str) -> ImageSpec:
        images = self.load()
        if image_id not in images:
            available = ", ".join(sorted(images)) or "<none>"
            raise CatalogueError(f"Unknown image '{image_id}'. Available: {available}", image_id=image_id)
        return images[image_id]

    def match(self, os_family: str = ".*", os_version: str = ".*", os_arch: str = ".*") -> ImageSpec:
        """Return the first image whose family, version and arch fully match the given patterns."""
        family_re = re.compile(os_family, re.IGNORECASE)
        version_re = re.compile(os_version)
        arch_re = re.compile(normalize_arch(os_arch) if os_arch != ".*" else os_arch)
        for spec in self.load().values():
            if (
                family_re.fullmatch(spec.os_family)
                and version_re.fullmatch(spec.os_version)
                and arch_re.fullmatch(spec.os_arch)
            ):
                return spec
        raise CatalogueError(
            f"No image matches os_family={os_family!r} os_version={os_version!r} os_arch={os_arch!r}"
        )
