"""Install-medium download cache for vbox-compute."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import unquote, urlparse

from vbox_compute.exceptions import NetworkError, StorageError
from vbox_compute.utils import download_file, ensure_directory, log, sha256_file


def uri_basename(uri: str) -> str:
    name = Path(unquote(urlparse(uri).path or "")).name
    if not name or name in {".", ".."}:
        raise NetworkError(f"Cannot derive a file name from URI '{uri}'")
    return name


class FileFetcher:
    """Downloads a URI into a directory, skipping work when the file is already there."""

    def __init__(self, download_dir: Path, retries: int = 3, backoff: float = 2.0) -> None:
        self.download_dir = download_dir
        self.retries = max(1, retries)
        self.backoff = backoff
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, basename: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(basename, threading.Lock())

    def fetch(self, uri: str, target_dir: Optional[Path] = None, sha256: Optional[str] = None) -> Path:
        target_dir = target_dir or self.download_dir
        basename = uri_basename(uri)
        try:
            ensure_directory(target_dir)
        except OSError as exc:
            raise StorageError(f"Cannot create download directory {target_dir}: {exc}")
        destination = target_dir / basename

        with self._lock_for(basename):
            if self._is_complete(destination, sha256):
                log("INFO", f"Using cached download: {destination}")
                return destination

            for attempt in range(1, self.retries + 1):
                try:
                    download_file(uri, destination, expected_sha256=sha256, label="Downloading install medium")
                    return destination
                except NetworkError as exc:
                    if attempt >= self.retries:
                        raise
                    delay = self.backoff * attempt
                    log("WARN", f"Download attempt {attempt}/{self.retries} failed: {exc.message}; retrying in {delay:.0f}s")
                    time.sleep(delay)
        raise NetworkError(f"Failed to download {uri}")  # pragma: no cover

    def _is_complete(self, destination: Path, sha256: Optional[str]) -> bool:
        if not destination.is_file():
            return False
        if sha256 is None:
            return destination.stat().st_size > 0
        try:
            actual = sha256_file(destination)
        except OSError as exc:
            raise StorageError(f"Cannot read cached download {destination}: {exc}")
        if actual == sha256.lower():
            return True
        log("WARN", f"Cached {destination.name} does not match the expected sha256; downloading again")
        return False
