"""Utility functions for vbox-compute."""

from __future__ import annotations

import hashlib
import os
import socket
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Callable, List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from vbox_compute.constants import _LOG_VERBOSE, DURATION_RE, POLL_INTERVAL, TRUTHY
from vbox_compute.exceptions import ConfigError, IntegrityError, InvariantError, NetworkError, StorageError

_verbose = _LOG_VERBOSE


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def log(level: str, message: str) -> None:
    """Lightweight levelled logging with ANSI colours."""
    if level == "DEBUG" and not _verbose:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def invariant_error(message: str, **context) -> InvariantError:
    """Build an InvariantError and log it; invariant breaches are always logged."""
    exc = InvariantError(message, **context)
    log("ERROR", f"Invariant violated: {exc}")
    return exc


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int(name: str, raw, min_val: int = 0, max_val: Optional[int] = None) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_duration(name: str, raw) -> float:
    """Parse ``90``, ``500ms``, ``10s``, ``45m`` or ``2h`` into seconds."""
    if isinstance(raw, bool):
        raise ConfigError(f"{name} must be a duration (got '{raw}')")
    if isinstance(raw, (int, float)):
        seconds = float(raw)
    else:
        match = DURATION_RE.match(str(raw))
        if not match:
            raise ConfigError(f"Invalid duration for {name}: '{raw}'. Use e.g. '30s', '10m', '2h'")
        value = float(match.group(1))
        unit = match.group(2) or "s"
        seconds = value * {"ms": 0.001, "s": 1, "m": 60, "h": 3600}[unit]
    if seconds < 0:
        raise ConfigError(f"{name} must not be negative (got '{raw}')")
    return seconds


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def hash_password(password: str) -> str:
    """Generate a bcrypt hash usable in crypted-password installer answers."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def download_file(
    url: str,
    destination: Path,
    expected_sha256: Optional[str] = None,
    label: str = "Downloading",
) -> str:
    """Stream ``url`` into ``destination`` atomically and return its sha256.

    The payload lands in a temporary file next to ``destination``, is fsynced,
    checked against ``expected_sha256`` when given and then renamed, so
    ``destination`` never holds a partial or corrupt download.
    """
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "vbox-compute/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise NetworkError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise NetworkError(f"Failed to download {url}: {exc.reason}")
    except OSError as exc:
        raise NetworkError(f"Failed to download {url}: {exc}")

    total = response.headers.get("Content-Length") if response.headers else None
    total_bytes = int(total) if total else None
    downloaded = 0
    last_report = 0
    start_time = time.time()
    digest = hashlib.sha256()

    try:
        tmp = tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, prefix=f".{destination.name}.")
    except OSError as exc:
        response.close()
        raise StorageError(f"Cannot create temporary file in {destination.parent}: {exc}")
    tmp_path = Path(tmp.name)
    try:
        with tmp:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                try:
                    chunk = response.read(chunk_size)
                except OSError as exc:
                    raise NetworkError(f"Connection lost while downloading {url}: {exc}")
                if not chunk:
                    break
                try:
                    tmp.write(chunk)
                except OSError as exc:
                    raise StorageError(f"Cannot write {tmp_path}: {exc}")
                digest.update(chunk)
                downloaded += len(chunk)
                # Progress every 64 MiB
                if downloaded - last_report >= 64 * 1024 * 1024:
                    last_report = downloaded
                    downloaded_mb = downloaded / (1024 * 1024)
                    if total_bytes:
                        pct = downloaded * 100 / total_bytes
                        log("DEBUG", f"  {pct:5.1f}% {downloaded_mb:.1f}/{total_bytes / (1024 * 1024):.1f} MiB")
                    else:
                        log("DEBUG", f"  {downloaded_mb:.1f} MiB downloaded")
            try:
                tmp.flush()
                os.fsync(tmp.fileno())
            except OSError as exc:
                raise StorageError(f"Cannot flush {tmp_path}: {exc}")
        if total_bytes is not None and downloaded != total_bytes:
            raise NetworkError(f"Short read downloading {url}: got {downloaded} of {total_bytes} bytes")
        actual = digest.hexdigest()
        if expected_sha256 and actual != expected_sha256.lower():
            raise IntegrityError(f"sha256 mismatch for {url}: expected {expected_sha256.lower()}, got {actual}")
        try:
            tmp_path.replace(destination)
        except OSError as exc:
            raise StorageError(f"Cannot move download into place at {destination}: {exc}")
        elapsed = time.time() - start_time
        log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
        return actual
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    finally:
        response.close()


def wait_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float = POLL_INTERVAL,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll ``predicate`` every ``interval`` seconds until it holds or ``timeout`` expires.

    The predicate is always evaluated at least once. Returns whether it held.
    """
    deadline = clock() + timeout
    while True:
        if predicate():
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        sleep(min(interval, remaining))


def free_port(host: str = "127.0.0.1") -> int:
    """Return a TCP port that is currently free on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
