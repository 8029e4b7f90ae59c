"""A TCP bridge from the tailnet address to a loopback-only service."""

from __future__ import annotations

import socket
import threading
from typing import Any

from portshare.bridge_planner import BridgePlan
from portshare.netdiag import split_host_port

_ACCEPT_POLL_SECONDS = 0.25
_DIAL_TIMEOUT_SECONDS = 5.0
_BUFFER_SIZE = 64 * 1024


def _split_address(address: str) -> tuple[str, int]:
    host, port = split_host_port(address)
    return host, int(port)


def _close_socket(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


def _copy_and_close(dst: socket.socket, src: socket.socket, done: threading.Event) -> None:
    try:
        while True:
            chunk = src.recv(_BUFFER_SIZE)
            if not chunk:
                break
            dst.sendall(chunk)
    except OSError:
        pass
    finally:
        _close_socket(dst)
        _close_socket(src)
        done.set()


class Bridge:
    """Accepts connections from allowed peers and relays them to the target address."""

    def __init__(self, plan: BridgePlan) -> None:
        self._plan = plan
        self._lock = threading.Lock()
        self._listener: socket.socket | None = None
        self._address: tuple[str, int] | None = None
        self._closed = False
        self._active: set[socket.socket] = set()

    def __enter__(self) -> Bridge:
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def start(self) -> None:
        """Listen on the plan's address; raises OSError or ValueError on failure."""
        host, port = _split_address(self._plan.listen_address)
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        listener = socket.create_server((host, port), family=family)
        listener.settimeout(_ACCEPT_POLL_SECONDS)
        with self._lock:
            if self._closed:
                listener.close()
                raise OSError("use of closed bridge")
            self._listener = listener
            self._address = listener.getsockname()[:2]
        threading.Thread(target=self._serve, args=(listener,), daemon=True).start()

    def addr(self) -> tuple[str, int] | None:
        """The (host, port) the bridge listens on, or None before start."""
        with self._lock:
            return self._address

    def close(self) -> None:
        """Stop listening and drop every open connection."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            listener = self._listener
            active = list(self._active)
        if listener is not None:
            listener.close()
        for conn in active:
            _close_socket(conn)

    def _serve(self, listener: socket.socket) -> None:
        while True:
            try:
                conn, peer = listener.accept()
            except OSError:
                if self._is_closed():
                    return
                continue
            if not self._add_active(conn):
                _close_socket(conn)
                return
            threading.Thread(target=self._handle, args=(conn, peer), daemon=True).start()

    def _handle(self, inbound: socket.socket, peer: tuple[Any, ...]) -> None:
        try:
            if not self._is_allowed_remote(peer):
                return
            inbound.settimeout(None)
            try:
                outbound = socket.create_connection(
                    _split_address(self._plan.target_address), timeout=_DIAL_TIMEOUT_SECONDS
                )
            except (OSError, ValueError):
                return
            outbound.settimeout(None)
            if not self._add_active(outbound):
                _close_socket(outbound)
                return
            try:
                done = threading.Event()
                for dst, src in ((outbound, inbound), (inbound, outbound)):
                    threading.Thread(
                        target=_copy_and_close, args=(dst, src, done), daemon=True
                    ).start()
                done.wait()
            finally:
                self._remove_active(outbound)
                _close_socket(outbound)
        finally:
            self._remove_active(inbound)
            _close_socket(inbound)

    def _is_allowed_remote(self, peer: tuple[Any, ...]) -> bool:
        if not peer:
            return False
        return str(peer[0]) in self._plan.allowed_peer_ips

    def _is_closed(self) -> bool:
        with self._lock:
            return self._closed

    def _add_active(self, conn: socket.socket) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._active.add(conn)
            return True

    def _remove_active(self, conn: socket.socket) -> None:
        with self._lock:
            self._active.discard(conn)