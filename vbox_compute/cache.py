"""At-most-one-build cache of golden masters keyed by image id."""

from __future__ import annotations

import concurrent.futures
import threading
from typing import Dict, List, Optional

from vbox_compute.exceptions import CancelledError
from vbox_compute.master import MasterBuilder
from vbox_compute.models import ImageSpec, Master
from vbox_compute.utils import invariant_error, log


class MasterCache:
    """Maps image ids to masters, building each one at most once at a time.

    The caller that inserts the Future for a key runs the build on its own
    thread; concurrent callers for the same key wait on that Future and see
    the same Master or the same exception. Failed builds are not cached.
    """

    def __init__(self, builder: MasterBuilder) -> None:
        self.builder = builder
        self._lock = threading.Lock()
        self._entries: Dict[str, concurrent.futures.Future] = {}

    def get(self, spec: ImageSpec, timeout: Optional[float] = None) -> Master:
        with self._lock:
            future = self._entries.get(spec.id)
            owner = future is None
            if owner:
                future = concurrent.futures.Future()
                future.set_running_or_notify_cancel()
                self._entries[spec.id] = future

        if owner:
            self._build(spec, future)
        else:
            log("DEBUG", f"Waiting for in-flight master build of {spec.id}")

        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            raise CancelledError(
                f"Gave up waiting for master after {timeout:.0f}s; the build continues",
                image_id=spec.id,
            )

    def _build(self, spec: ImageSpec, future: concurrent.futures.Future) -> None:
        try:
            master = self.builder.build(spec)
            if master is None or not master.machine_handle:
                raise invariant_error("Master builder returned a master without a handle", image_id=spec.id)
        except BaseException as exc:
            with self._lock:
                if self._entries.get(spec.id) is future:
                    del self._entries[spec.id]
            future.set_exception(exc)
            if not isinstance(exc, Exception):
                raise
            return
        future.set_result(master)

    def seed(self, master: Master) -> None:
        """Record a master that was produced without the builder."""
        future: concurrent.futures.Future = concurrent.futures.Future()
        future.set_result(master)
        with self._lock:
            if master.image_id in self._entries:
                raise invariant_error("A master is already cached for this image", image_id=master.image_id)
            self._entries[master.image_id] = future

    def invalidate(self, image_id: str) -> Optional[Master]:
        """Forget a cached master. The machine itself is left alone."""
        with self._lock:
            future = self._entries.get(image_id)
            if future is None or not future.done():
                return None
            del self._entries[image_id]
        if future.exception() is not None:
            return None
        return future.result()

    def peek(self, image_id: str) -> Optional[Master]:
        with self._lock:
            future = self._entries.get(image_id)
        if future is None or not future.done() or future.exception() is not None:
            return None
        return future.result()

    def building(self, image_id: str) -> bool:
        with self._lock:
            future = self._entries.get(image_id)
        return future is not None and not future.done()

    def masters(self) -> List[Master]:
        with self._lock:
            futures = list(self._entries.values())
        return [f.result() for f in futures if f.done() and f.exception() is None]
