"""Embedded HTTP endpoint serving unattended-install answers to guests."""

from __future__ import annotations

import threading
import time
from typing import Optional
from urllib.parse import urlparse, urlunparse

from flask import Flask, Response, abort
from werkzeug.serving import make_server

from vbox_compute.constants import LOOPBACK, NAT_HOST_ADDRESS, PRESEED_PATH
from vbox_compute.exceptions import ConflictError, StorageError
from vbox_compute.utils import log


class PreseedLease:
    """A reference on the running PreseedServer; released exactly once."""

    def __init__(self, server: "PreseedServer", document: str, url: str) -> None:
        self.server = server
        self.document = document
        self.url = url
        self.released = False

    @property
    def guest_url(self) -> str:
        return self.server.guest_url(self.url)

    def fetched(self) -> bool:
        return self.server.fetched(self.document)

    def release(self) -> None:
        if not self.released:
            self.released = True
            self.server.release()

    def __enter__(self) -> "PreseedLease":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class PreseedServer:
    """Single-document HTTP server, reference counted by in-flight master builds.

    Only ``GET /preseed.cfg`` is served; every other path is a 404. The server
    binds on demand and unbinds when the last lease is released.
    """

    def __init__(self, bind_host: str = "0.0.0.0", port: int = 0, guest_host: str = NAT_HOST_ADDRESS) -> None:
        self.bind_host = bind_host
        self.port = port
        self.guest_host = guest_host
        self._cond = threading.Condition()
        self._document: Optional[str] = None
        self._url: Optional[str] = None
        self._server = None
        self._thread: Optional[threading.Thread] = None
        self._leases = 0
        self._fetches = 0
        self.app = self._create_app()

    def _create_app(self) -> Flask:
        app = Flask("vbox_compute.preseed")

        @app.route(PRESEED_PATH, methods=["GET"])
        def preseed_cfg():
            with self._cond:
                document = self._document
                if document is None:
                    abort(404)
                self._fetches += 1
                self._cond.notify_all()
            log("INFO", "Guest fetched preseed document")
            return Response(document, mimetype="text/plain")

        return app

    @property
    def url(self) -> Optional[str]:
        return self._url

    @property
    def running(self) -> bool:
        return self._server is not None

    def start(self, document: str) -> str:
        with self._cond:
            return self._start_locked(document)

    def _start_locked(self, document: str) -> str:
        if self._server is not None:
            if document == self._document:
                return self._url  # type: ignore[return-value]
            raise ConflictError("Preseed server is already serving a different document")
        try:
            server = make_server(self.bind_host, self.port, self.app, threaded=True)
        except OSError as exc:
            raise StorageError(f"Cannot bind preseed server on {self.bind_host}:{self.port}: {exc}")
        host = LOOPBACK if self.bind_host in {"0.0.0.0", ""} else self.bind_host
        self._server = server
        self._document = document
        self._fetches = 0
        self._url = f"http://{host}:{server.server_port}{PRESEED_PATH}"
        self._thread = threading.Thread(target=server.serve_forever, name="preseed-server", daemon=True)
        self._thread.start()
        log("INFO", f"Preseed server listening on {self.bind_host}:{server.server_port}")
        return self._url

    def stop(self) -> None:
        with self._cond:
            self._leases = 0
            self._stop_locked()

    def _stop_locked(self) -> None:
        server, thread = self._server, self._thread
        self._server = None
        self._thread = None
        self._document = None
        self._url = None
        self._fetches = 0
        if server is not None:
            server.shutdown()
            server.server_close()
            if thread is not None:
                thread.join(timeout=5)
            log("INFO", "Preseed server stopped")
        self._cond.notify_all()

    def acquire(self, document: str, timeout: Optional[float] = None) -> str:
        """Take a reference on the server for ``document``, waiting out a different document."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._server is not None and self._document != document:
                if self._leases == 0:
                    self._stop_locked()
                    break
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise ConflictError("Preseed server is busy serving another install")
                self._cond.wait(remaining)
            url = self._start_locked(document)
            self._leases += 1
            return url

    def release(self) -> None:
        with self._cond:
            if self._leases > 0:
                self._leases -= 1
            if self._leases == 0:
                self._stop_locked()

    def lease(self, document: str, timeout: Optional[float] = None) -> PreseedLease:
        url = self.acquire(document, timeout)
        return PreseedLease(self, document, url)

    def fetched(self, document: str) -> bool:
        with self._cond:
            return self._document == document and self._fetches > 0

    def guest_url(self, url: str) -> str:
        """Rewrite ``url`` to the address guests reach the host at through NAT."""
        parsed = urlparse(url)
        netloc = f"{self.guest_host}:{parsed.port}" if parsed.port else self.guest_host
        return urlunparse(parsed._replace(netloc=netloc))
