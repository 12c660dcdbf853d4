"""Authenticated, AES-CTR encrypted tunnel connections keyed by a shared secret."""

from __future__ import annotations

import hashlib
import hmac
import os
import socket
import threading

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .frames import recv_exactly as _recv_exactly

HANDSHAKE_MESSAGE = b"handshake"
MAC_SIZE = hashlib.sha256().digest_size
IV_SIZE = 16
KEEPALIVE_SECONDS = 30


class AuthenticationError(Exception):
    """The peer did not prove knowledge of the shared secret."""

    def __init__(self, message: str = "authentication failed") -> None:
        super().__init__(message)


def derive_key(secret: str) -> bytes:
    """Derive the 32-byte AES/HMAC key from the shared secret."""
    return hashlib.sha256(secret.encode()).digest()


def _handshake_mac(key: bytes) -> bytes:
    return hmac.new(key, HANDSHAKE_MESSAGE, hashlib.sha256).digest()


def _ctr(key: bytes, iv: bytes) -> Cipher:
    return Cipher(algorithms.AES(key), modes.CTR(iv))


class SecureConnection:
    """A socket whose traffic is encrypted with independent CTR streams per direction."""

    def __init__(self, sock: socket.socket, key: bytes, send_iv: bytes, recv_iv: bytes) -> None:
        self.sock = sock
        self._encryptor = _ctr(key, send_iv).encryptor()
        self._decryptor = _ctr(key, recv_iv).decryptor()
        self._send_lock = threading.Lock()
        self._recv_lock = threading.Lock()

    def recv(self, size: int) -> bytes:
        """Read and decrypt up to ``size`` bytes; ``b""`` once the peer has closed."""
        with self._recv_lock:
            data = self.sock.recv(size)
            return self._decryptor.update(data) if data else b""

    def recv_exactly(self, size: int) -> bytes:
        """Read and decrypt exactly ``size`` bytes; raise EOFError if the peer closes first."""
        return _recv_exactly(self, size)

    def sendall(self, data: bytes) -> None:
        """Encrypt and send all of ``data``."""
        with self._send_lock:
            self.sock.sendall(self._encryptor.update(bytes(data)))

    def getpeername(self):
        return self.sock.getpeername()

    def shutdown(self, how: int) -> None:
        self.sock.shutdown(how)

    def close(self) -> None:
        """Close the underlying socket."""
        self.sock.close()

    def __enter__(self) -> "SecureConnection":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def _tune_tcp(sock: socket.socket) -> None:
    if sock.family not in (socket.AF_INET, socket.AF_INET6):
        return
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if hasattr(socket, "TCP_KEEPIDLE"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, KEEPALIVE_SECONDS)
    except OSError:
        pass


def secure_client(sock: socket.socket, secret: str) -> SecureConnection:
    """Authenticate to the server side and send the two stream IVs."""
    key = derive_key(secret)
    sock.sendall(_handshake_mac(key))
    iv_enc = os.urandom(IV_SIZE)
    iv_dec = os.urandom(IV_SIZE)
    sock.sendall(iv_enc)
    sock.sendall(iv_dec)
    sock.settimeout(None)
    return SecureConnection(sock, key, send_iv=iv_enc, recv_iv=iv_dec)


def secure_server(sock: socket.socket, secret: str) -> SecureConnection:
    """Verify the client's handshake MAC and read the stream IVs it chose."""
    key = derive_key(secret)
    received_mac = _recv_exactly(sock, MAC_SIZE)
    if not hmac.compare_digest(received_mac, _handshake_mac(key)):
        raise AuthenticationError()
    iv_enc = _recv_exactly(sock, IV_SIZE)
    iv_dec = _recv_exactly(sock, IV_SIZE)
    _tune_tcp(sock)
    return SecureConnection(sock, key, send_iv=iv_dec, recv_iv=iv_enc)