"""vbox-compute package."""

__all__ = [
    "adapter",
    "cache",
    "catalogue",
    "cli",
    "config",
    "constants",
    "exceptions",
    "fetcher",
    "hypervisor",
    "master",
    "models",
    "node",
    "preseed",
    "provider",
    "ssh",
    "states",
    "utils",
]
