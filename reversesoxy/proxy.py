"""SOCKS5 front end that forwards client sessions through an encrypted tunnel."""

from __future__ import annotations

import random
import socket
import struct
import threading
from ipaddress import IPv4Address, IPv6Address

from . import logger
from .frames import HEADER_SIZE, encode_frame, recv_exactly, unpack_header
from .relay import REGISTER_HEADER, _split_host_port
from .secure import AuthenticationError, secure_server

SOCKS_VERSION = 0x05
NO_AUTH = 0x00
CMD_CONNECT = 0x01
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04
BOUND_PORT = 1080
BUFFER_SIZE = 4096

METHOD_SELECTION = bytes([SOCKS_VERSION, NO_AUTH])
CONNECT_REPLY = (
    bytes([SOCKS_VERSION, 0x00, 0x00, ATYP_IPV4])
    + IPv4Address("127.0.0.1").packed
    + struct.pack(">H", BOUND_PORT)
)

_PORT = struct.Struct(">H")
_TARGET_ENCODING = ("utf-8", "surrogateescape")


class SocksError(Exception):
    """The SOCKS client sent something this proxy cannot serve, or went away."""


def _close(conn) -> None:
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        conn.close()
    except OSError:
        pass


def _peer(conn) -> object:
    try:
        return conn.getpeername()
    except OSError:
        return "unknown"


def _read(client, size: int, context: str) -> bytes:
    try:
        return recv_exactly(client, size)
    except (EOFError, OSError) as exc:
        raise SocksError(f"{context}: {exc}") from exc


def _write(client, data: bytes, context: str) -> None:
    try:
        client.sendall(data)
    except OSError as exc:
        raise SocksError(f"{context}: {exc}") from exc


def negotiate_socks(client) -> str:
    """Run the SOCKS5 no-auth CONNECT handshake and return the requested ``host:port``."""
    version, method_count = _read(client, 2, "SOCKS handshake failed")
    if version != SOCKS_VERSION:
        raise SocksError(f"Unsupported SOCKS version: {version}")
    _read(client, method_count, "SOCKS handshake method read failed")
    _write(client, METHOD_SELECTION, "Failed to write SOCKS5 method selection")

    version, command, _reserved, address_type = _read(client, 4, "SOCKS connect request failed")
    if version != SOCKS_VERSION or command != CMD_CONNECT:
        raise SocksError("Only SOCKS5 CONNECT supported")

    context = "SOCKS connect request addr/port read failed"
    if address_type == ATYP_IPV4:
        host = str(IPv4Address(_read(client, 4, context)))
        (port,) = _PORT.unpack(_read(client, 2, context))
        target = f"{host}:{port}"
    elif address_type == ATYP_DOMAIN:
        (host_length,) = _read(client, 1, context)
        host = _read(client, host_length, context).decode(*_TARGET_ENCODING)
        (port,) = _PORT.unpack(_read(client, 2, context))
        target = f"{host}:{port}"
    elif address_type == ATYP_IPV6:
        address = IPv6Address(_read(client, 16, context))
        mapped = address.ipv4_mapped
        host = str(mapped) if mapped is not None else address.compressed
        (port,) = _PORT.unpack(_read(client, 2, context))
        target = f"[{host}]:{port}"
    else:
        raise SocksError(f"Unsupported address type: {address_type}")

    _write(client, CONNECT_REPLY, "Failed to write SOCKS5 connect reply")
    return target


def _listen(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    return socket.create_server((host, port), family=family)


class ProxyServer:
    """Multiplexes SOCKS5 client sessions over one tunnel to an agent."""

    def __init__(self, secret: str = "") -> None:
        self.secret = secret
        self.tunnel = None
        self.sessions: dict[int, object] = {}
        self._tunnel_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._sessions_lock = threading.Lock()

    def attach_tunnel(self, tunnel) -> threading.Thread:
        """Make ``tunnel`` the active tunnel, close the previous one, and start reading it."""
        with self._tunnel_lock:
            previous, self.tunnel = self.tunnel, tunnel
        if previous is not None:
            logger.info("Closing previous tunnel connection")
            _close(previous)
        reader = threading.Thread(target=self.read_tunnel, args=(tunnel,), daemon=True)
        reader.start()
        return reader

    def _send_frame(self, tunnel, session_id: int, payload: bytes) -> None:
        with self._write_lock:
            tunnel.sendall(encode_frame(session_id, payload))

    def _forget(self, session_id: int) -> None:
        with self._sessions_lock:
            self.sessions.pop(session_id, None)

    def handle_client(self, client) -> None:
        """Serve one SOCKS client: negotiate, open a tunnel session, and forward its data."""
        try:
            target = negotiate_socks(client)
        except SocksError as exc:
            logger.error("%s", exc)
            _close(client)
            return
        logger.info("Request to %s", target)

        session_id = random.getrandbits(32)
        with self._tunnel_lock:
            tunnel = self.tunnel
            if tunnel is None:
                logger.error("No tunnel connection available for session %08x", session_id)
                _close(client)
                return
            with self._sessions_lock:
                self.sessions[session_id] = client
            try:
                self._send_frame(tunnel, session_id, target.encode(*_TARGET_ENCODING))
            except OSError as exc:
                self._forget(session_id)
                logger.error("Failed to write session header: %s", exc)
                _close(client)
                return
        logger.info("Tunnel connected from %s", _peer(tunnel))
        self._forward(client, tunnel, session_id)

    def _forward(self, client, tunnel, session_id: int) -> None:
        reason: object = "EOF"
        while True:
            logger.debug("session %08x waiting to read from SOCKS client", session_id)
            try:
                data = client.recv(BUFFER_SIZE)
            except OSError as exc:
                reason = exc
                break
            if not data:
                logger.debug("session %08x closed by client", session_id)
                break
            logger.debug("session %08x preparing to send %d bytes", session_id, len(data))
            try:
                self._send_frame(tunnel, session_id, data)
            except OSError as exc:
                logger.error("session %08x header+payload write failed: %s", session_id, exc)
                reason = exc
                break
            logger.debug("session %08x wrote header and %d payload bytes to tunnel", session_id, len(data))
        logger.info("session %08x closing, reason: %s", session_id, reason)
        _close(client)
        self._forget(session_id)

    def read_tunnel(self, tunnel) -> None:
        """Deliver frames arriving on ``tunnel`` to their SOCKS clients until it closes."""
        while True:
            try:
                session_id, length = unpack_header(recv_exactly(tunnel, HEADER_SIZE))
            except (EOFError, OSError) as exc:
                logger.info("Tunnel read error: %s", exc)
                return
            try:
                payload = recv_exactly(tunnel, length)
            except (EOFError, OSError) as exc:
                logger.error("Payload read error for session %08x: %s", session_id, exc)
                return
            with self._sessions_lock:
                client = self.sessions.get(session_id)
            if client is None:
                logger.error("Received data for unknown or closed session %08x", session_id)
                continue
            try:
                client.sendall(payload)
            except OSError as exc:
                logger.error("Write to SOCKS client for session %08x failed: %s", session_id, exc)
                self._forget(session_id)
                _close(client)

    def _accept_tunnels(self, listener: socket.socket) -> None:
        with listener:
            while True:
                try:
                    raw, _ = listener.accept()
                except OSError as exc:
                    logger.error("Tunnel accept failed: %s", exc)
                    return
                try:
                    secure = secure_server(raw, self.secret)
                except (AuthenticationError, EOFError, OSError) as exc:
                    logger.error("Secure handshake failed: %s", exc)
                    _close(raw)
                    continue
                self.attach_tunnel(secure)
                logger.info("Tunnel connected from %s", _peer(secure))

    def serve_socks(self, listen_addr: str) -> None:
        """Accept SOCKS5 clients on ``listen_addr``, each served in its own thread."""
        try:
            listener = _listen(*_split_host_port(listen_addr))
        except (OSError, ValueError) as exc:
            logger.fatal("SOCKS5 listen failed: %s", exc)
        with listener:
            logger.info("SOCKS5 proxy listening on %s", listen_addr)
            while True:
                try:
                    client, _ = listener.accept()
                except OSError as exc:
                    logger.info("Accept error: %s", exc)
                    continue
                threading.Thread(target=self.handle_client, args=(client,), daemon=True).start()


def run_proxy(proxy_addr: str, port: int, secret: str) -> None:
    """Listen for agent tunnels on ``port`` and for SOCKS5 clients on ``proxy_addr``."""
    server = ProxyServer(secret)
    logger.info("Listening for tunnel on port %d", port)
    try:
        tunnel_listener = _listen("", port)
    except OSError as exc:
        logger.fatal("Tunnel listener failed: %s", exc)
    threading.Thread(target=server._accept_tunnels, args=(tunnel_listener,), daemon=True).start()
    server.serve_socks(proxy_addr)


def run_proxy_relay(relay_addr: str, socks_addr: str, secret: str) -> None:
    """Register with a relay, use that connection as the tunnel, and serve SOCKS5 clients."""
    logger.info("Registering with relay %s", relay_addr)
    try:
        raw = socket.create_connection(_split_host_port(relay_addr))
    except (OSError, ValueError) as exc:
        logger.fatal("Register dial failed: %s", exc)
    try:
        try:
            raw.sendall(REGISTER_HEADER)
        except OSError as exc:
            logger.fatal("Register header send error: %s", exc)
        try:
            secure = secure_server(raw, secret)
        except (AuthenticationError, EOFError, OSError) as exc:
            logger.fatal("Secure handshake failed: %s", exc)
        server = ProxyServer(secret)
        server.attach_tunnel(secure)
        logger.info("Tunnel via relay established")
        server.serve_socks(socks_addr)
    finally:
        raw.close()