"""Error taxonomy for vbox-compute."""

from __future__ import annotations

from typing import Optional

CATALOGUE = "CATALOGUE"
NETWORK = "NETWORK"
INTEGRITY = "INTEGRITY"
IO = "IO"
HYPERVISOR = "HYPERVISOR"
INSTALL_TIMEOUT = "INSTALL_TIMEOUT"
NAME_COLLISION = "NAME_COLLISION"
NODE_UNREACHABLE = "NODE_UNREACHABLE"
CONFLICT = "CONFLICT"
CANCELLED = "CANCELLED"
INVARIANT = "INVARIANT"
NOT_FOUND = "NOT_FOUND"
CONFIG = "CONFIG"

USER_ERRORS = {CATALOGUE, NAME_COLLISION, CONFLICT, NOT_FOUND, CONFIG}
ENVIRONMENT_ERRORS = {HYPERVISOR, NETWORK, IO}
TIMEOUT_ERRORS = {INSTALL_TIMEOUT, NODE_UNREACHABLE}


class ProviderError(RuntimeError):
    """Raised on unrecoverable provider errors.

    ``kind`` is one of the module-level kind tags; ``image_id`` and
    ``node_name`` carry the offending object when one is known.
    """

    kind = INVARIANT

    def __init__(
        self,
        message: str,
        *,
        image_id: Optional[str] = None,
        node_name: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.image_id = image_id
        self.node_name = node_name

    def with_context(self, *, image_id: Optional[str] = None, node_name: Optional[str] = None) -> "ProviderError":
        """Tag the error with context it does not carry yet and return it for re-raising."""
        if self.image_id is None:
            self.image_id = image_id
        if self.node_name is None:
            self.node_name = node_name
        return self

    def __str__(self) -> str:
        context = []
        if self.image_id:
            context.append(f"image={self.image_id}")
        if self.node_name:
            context.append(f"node={self.node_name}")
        suffix = f" ({', '.join(context)})" if context else ""
        return f"{self.kind}: {self.message}{suffix}"


class CatalogueError(ProviderError):
    kind = CATALOGUE


class NetworkError(ProviderError):
    kind = NETWORK


class IntegrityError(ProviderError):
    kind = INTEGRITY


class StorageError(ProviderError):
    kind = IO


class HypervisorError(ProviderError):
    kind = HYPERVISOR


class InstallTimeoutError(ProviderError):
    kind = INSTALL_TIMEOUT


class NameCollisionError(ProviderError):
    kind = NAME_COLLISION


class NodeUnreachableError(ProviderError):
    kind = NODE_UNREACHABLE


class ConflictError(ProviderError):
    kind = CONFLICT


class CancelledError(ProviderError):
    kind = CANCELLED


class InvariantError(ProviderError):
    kind = INVARIANT


class NotFoundError(ProviderError):
    kind = NOT_FOUND


class ConfigError(ProviderError):
    kind = CONFIG


def exit_code_for(exc: BaseException) -> int:
    """Map an exception to the CLI exit code contract."""
    kind = getattr(exc, "kind", None)
    if kind in USER_ERRORS:
        return 2
    if kind in ENVIRONMENT_ERRORS:
        return 3
    if kind in TIMEOUT_ERRORS:
        return 4
    return 1
