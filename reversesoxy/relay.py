"""Relay server pairing registered proxies with connecting agents."""

from __future__ import annotations

import socket
import threading
from collections import deque

from . import logger
from .frames import recv_exactly

HEADER_SIZE = 8
REGISTER_HEADER = b"REGISTER"
AGENT_HEADER = b"AGENT   "
BUFFER_SIZE = 4096


def _split_host_port(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid address {address!r}")
    return host.strip("[]"), int(port)


def _close(conn: socket.socket) -> None:
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    conn.close()


def _pipe(src: socket.socket, dst: socket.socket, direction: str) -> None:
    while True:
        try:
            data = src.recv(BUFFER_SIZE)
        except OSError as exc:
            logger.error("Relay %s read error: %s", direction, exc)
            return
        if not data:
            return
        logger.debug("Relay %s payload: %s", direction, data.hex())
        try:
            dst.sendall(data)
        except OSError as exc:
            logger.error("Relay write %s error: %s", direction, exc)
            return


class Relay:
    """Accepts proxy registrations and bridges each agent to the oldest registered proxy."""

    def __init__(self, secret: str = "") -> None:
        self.secret = secret
        self.registry: deque[socket.socket] = deque()
        self._lock = threading.Lock()

    def serve(self, listen_port: int) -> None:
        """Listen on ``listen_port`` and handle each connection in its own thread."""
        try:
            listener = socket.create_server(("", listen_port))
        except OSError as exc:
            logger.fatal("Relay listen error: %s", exc)
        with listener:
            logger.info("Relay listening on :%d", listen_port)
            while True:
                try:
                    conn, _ = listener.accept()
                except OSError as exc:
                    logger.error("Relay accept error: %s", exc)
                    continue
                threading.Thread(target=self.handle, args=(conn,), daemon=True).start()

    def handle(self, conn: socket.socket) -> None:
        """Read the 8-byte role header and register or bridge the connection."""
        try:
            header = recv_exactly(conn, HEADER_SIZE)
        except (EOFError, OSError) as exc:
            logger.error("Relay header read error: %s", exc)
            _close(conn)
            return
        kind = header.decode("latin-1").strip()
        if kind == "REGISTER":
            self._register(conn)
            return
        try:
            if kind == "AGENT":
                self._bridge(conn)
            else:
                logger.error("Unknown relay header: %s", kind)
        finally:
            _close(conn)

    def _register(self, conn: socket.socket) -> None:
        with self._lock:
            self.registry.append(conn)
        logger.info("Proxy registered to relay")

    def _bridge(self, agent: socket.socket) -> None:
        with self._lock:
            proxy_conn = self.registry.popleft() if self.registry else None
        if proxy_conn is None:
            logger.error("No registered proxies available")
            return
        threading.Thread(
            target=_pipe, args=(agent, proxy_conn, "agent->proxy"), daemon=True
        ).start()
        _pipe(proxy_conn, agent, "proxy->agent")


def run_relay(listen_port: int, secret: str) -> None:
    """Run a relay server on ``listen_port`` until the process ends."""
    Relay(secret).serve(listen_port)


def run_register(relay_addr: str, secret: str) -> None:
    """Register with a relay as a proxy and hold the connection until the relay closes it."""
    try:
        conn = socket.create_connection(_split_host_port(relay_addr))
    except (OSError, ValueError) as exc:
        logger.fatal("Register dial error: %s", exc)
    with conn:
        try:
            conn.sendall(REGISTER_HEADER)
        except OSError:
            pass
        logger.info("Registered with relay %s", relay_addr)
        while True:
            try:
                if not conn.recv(BUFFER_SIZE):
                    return
            except OSError:
                return