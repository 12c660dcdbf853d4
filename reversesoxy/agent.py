"""Agent side of the tunnel: opens the connections the proxy asks for and relays their data."""

from __future__ import annotations

import queue
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from . import logger
from .frames import HEADER_SIZE, encode_frame, recv_exactly, unpack_header
from .relay import AGENT_HEADER, _split_host_port
from .secure import secure_client

DEFAULT_MAX_RETRIES = 10
RETRY_DELAY = 5.0
BUFFER_SIZE = 4096
QUEUE_DEPTH = 10
KEEPALIVE_SECONDS = 30
_PUT_POLL_SECONDS = 0.5
_TARGET_ENCODING = ("utf-8", "surrogateescape")


def _dial_target(target: str) -> socket.socket:
    return socket.create_connection(_split_host_port(target))


def _close(conn) -> None:
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    try:
        conn.close()
    except OSError:
        pass


def _tune_tcp(sock: socket.socket) -> None:
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if hasattr(socket, "TCP_KEEPIDLE"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, KEEPALIVE_SECONDS)
    except OSError:
        pass


@dataclass(eq=False)
class _Session:
    target: socket.socket
    incoming: queue.Queue = field(default_factory=lambda: queue.Queue(maxsize=QUEUE_DEPTH))
    closed: threading.Event = field(default_factory=threading.Event)

    def deliver(self, data: bytes) -> bool:
        """Queue data for the target; False if the session has already ended."""
        while not self.closed.is_set():
            try:
                self.incoming.put(data, timeout=_PUT_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False


class Agent:
    """Serves tunnel sessions: dials each requested target and shuttles bytes both ways."""

    def __init__(self, dial: Optional[Callable[[str], socket.socket]] = None) -> None:
        self._dial = dial or _dial_target
        self.sessions: dict[int, _Session] = {}
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()

    def serve_tunnel(self, tunnel) -> None:
        """Read frames from ``tunnel`` until it closes, opening and feeding sessions."""
        logger.info("Starting to read from tunnel")
        while True:
            logger.debug("Waiting for tunnel header...")
            try:
                session_id, length = unpack_header(recv_exactly(tunnel, HEADER_SIZE))
            except (EOFError, OSError) as exc:
                logger.info("tunnel read error: %s", exc)
                return
            logger.debug("Read header - session ID: %08x", session_id)
            logger.debug("Expected payload length: %d", length)

            with self._lock:
                session = self.sessions.get(session_id)
            if session is None:
                try:
                    target = recv_exactly(tunnel, length).decode(*_TARGET_ENCODING)
                except (EOFError, OSError) as exc:
                    logger.error("Failed to read target address: %s", exc)
                    continue
                self._open_session(session_id, target, tunnel)
                continue

            logger.debug("about to read %d bytes of payload for session %08x", length, session_id)
            try:
                payload = recv_exactly(tunnel, length)
            except (EOFError, OSError) as exc:
                logger.error("session %08x payload read error: %s", session_id, exc)
                return
            logger.debug("session %08x received %d bytes payload: %s", session_id, length, payload.hex())
            if not session.deliver(payload):
                logger.debug("session %08x already closed, dropping %d bytes", session_id, length)

    def _open_session(self, session_id: int, target: str, tunnel) -> None:
        logger.info("session %08x connecting to %s", session_id, target)
        try:
            target_conn = self._dial(target)
        except (OSError, ValueError) as exc:
            logger.error("session %08x dial failed: %s", session_id, exc)
            return
        session = _Session(target_conn)
        with self._lock:
            self.sessions[session_id] = session
        threading.Thread(
            target=self._run_session, args=(session_id, session, tunnel), daemon=True
        ).start()

    def _run_session(self, session_id: int, session: _Session, tunnel) -> None:
        threading.Thread(
            target=self._pump_target, args=(session_id, session, tunnel), daemon=True
        ).start()
        try:
            while True:
                data = session.incoming.get()
                if data is None:
                    break
                logger.debug("session %08x writing %d bytes to target", session_id, len(data))
                try:
                    session.target.sendall(data)
                except OSError as exc:
                    logger.error("session %08x write to target failed: %s", session_id, exc)
                    break
                logger.debug("session %08x forwarded %d bytes to target", session_id, len(data))
        finally:
            self._end_session(session_id, session)

    def _pump_target(self, session_id: int, session: _Session, tunnel) -> None:
        while True:
            try:
                data = session.target.recv(BUFFER_SIZE)
            except OSError:
                data = b""
            if not data:
                logger.debug("session %08x closed by target", session_id)
                break
            try:
                with self._write_lock:
                    tunnel.sendall(encode_frame(session_id, data))
            except OSError as exc:
                logger.error("session %08x write to tunnel failed: %s", session_id, exc)
                break
            logger.debug("session %08x sent %d bytes to tunnel", session_id, len(data))
        self._end_session(session_id, session)

    def _end_session(self, session_id: int, session: _Session) -> None:
        with self._lock:
            if self.sessions.get(session_id) is session:
                del self.sessions[session_id]
            if session.closed.is_set():
                return
            session.closed.set()
        _close(session.target)
        try:
            session.incoming.put_nowait(None)
        except queue.Full:
            pass


def run_agent(
    proxy_addr: str,
    secret: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay: float = RETRY_DELAY,
) -> None:
    """Dial the proxy directly and serve the tunnel, reconnecting up to ``max_retries`` times."""
    if max_retries <= 0:
        max_retries = DEFAULT_MAX_RETRIES
    agent = Agent()
    retries = 0
    while retries < max_retries:
        try:
            raw = socket.create_connection(_split_host_port(proxy_addr))
        except (OSError, ValueError) as exc:
            retries += 1
            logger.error("Agent connection failed: %s (attempt %d/%d)", exc, retries, max_retries)
            if retries >= max_retries:
                logger.info("Maximum retry attempts (%d) reached, exiting", max_retries)
                return
            time.sleep(retry_delay)
            continue

        retries = 0
        _tune_tcp(raw)
        try:
            tunnel = secure_client(raw, secret)
        except OSError as exc:
            logger.error("Secure handshake failed: %s", exc)
            _close(raw)
            time.sleep(retry_delay)
            continue
        logger.info("Agent connected to laptop")
        with tunnel:
            agent.serve_tunnel(tunnel)
        logger.info("Agent disconnected, retrying in %gs", retry_delay)
        time.sleep(retry_delay)

        retries += 1
        logger.info("Reconnection attempt %d/%d", retries, max_retries)
        if retries >= max_retries:
            logger.info("Maximum retry attempts (%d) reached, exiting", max_retries)
            return


def run_agent_relay(
    relay_addr: str,
    secret: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay: float = RETRY_DELAY,
) -> None:
    """Reach the proxy through a relay; only failed dials count towards ``max_retries``."""
    if max_retries <= 0:
        max_retries = DEFAULT_MAX_RETRIES
    agent = Agent()
    retries = 0
    while True:
        try:
            raw = socket.create_connection(_split_host_port(relay_addr))
        except (OSError, ValueError) as exc:
            retries += 1
            logger.error("AgentRelay dial failed: %s (attempt %d/%d)", exc, retries, max_retries)
            if retries >= max_retries:
                logger.info("Maximum retry attempts (%d) reached, exiting", max_retries)
                return
            time.sleep(retry_delay)
            continue
        try:
            raw.sendall(AGENT_HEADER)
        except OSError as exc:
            _close(raw)
            logger.error("AgentRelay header send error: %s", exc)
            time.sleep(retry_delay)
            continue
        try:
            tunnel = secure_client(raw, secret)
        except OSError as exc:
            logger.error("AgentRelay handshake failed: %s", exc)
            _close(raw)
            time.sleep(retry_delay)
            continue
        logger.info("Agent connected via relay %s", relay_addr)
        with tunnel:
            agent.serve_tunnel(tunnel)
        time.sleep(retry_delay)