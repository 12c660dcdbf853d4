import socket
import struct
import threading
from ipaddress import IPv6Address

import pytest

from reversesoxy.frames import HEADER_SIZE, encode_frame, recv_exactly, unpack_header
from reversesoxy.proxy import (
    CONNECT_REPLY,
    ProxyServer,
    SocksError,
    negotiate_socks,
    run_proxy_relay,
)

GREETING = b"\x05\x01\x00"


def _request(address_type: int, address: bytes, port: int, command: int = 1) -> bytes:
    return bytes([5, command, 0, address_type]) + address + struct.pack(">H", port)


def _domain(name: bytes) -> bytes:
    return bytes([len(name)]) + name


@pytest.fixture
def pair():
    near, far = socket.socketpair()
    near.settimeout(5)
    far.settimeout(5)
    yield near, far
    near.close()
    far.close()


def test_negotiation_writes_expected_wire_bytes(pair):
    user, server_side = pair
    user.sendall(GREETING + _request(1, bytes([10, 0, 0, 2]), 8080))
    assert negotiate_socks(server_side) == "10.0.0.2:8080"
    assert recv_exactly(user, 12) == (
        b"\x05\x00" + b"\x05\x00\x00\x01\x7f\x00\x00\x01\x04\x38"
    )


def test_negotiate_ipv4(pair):
    user, server_side = pair
    user.sendall(GREETING + _request(1, bytes([127, 0, 0, 1]), 80))
    assert negotiate_socks(server_side) == "127.0.0.1:80"
    assert recv_exactly(user, 2) == b"\x05\x00"
    assert recv_exactly(user, 10) == CONNECT_REPLY


def test_negotiate_domain_with_several_methods(pair):
    user, server_side = pair
    user.sendall(b"\x05\x02\x00\x02" + _request(3, _domain(b"example.com"), 443))
    assert negotiate_socks(server_side) == "example.com:443"
    assert recv_exactly(user, 12) == b"\x05\x00" + CONNECT_REPLY


def test_negotiate_ipv6_is_bracketed(pair):
    user, server_side = pair
    user.sendall(GREETING + _request(4, IPv6Address("::1").packed, 8080))
    assert negotiate_socks(server_side) == "[::1]:8080"


def test_negotiate_ipv4_mapped_ipv6(pair):
    user, server_side = pair
    user.sendall(GREETING + _request(4, IPv6Address("::ffff:10.0.0.1").packed, 22))
    assert negotiate_socks(server_side) == "[10.0.0.1]:22"


def test_negotiate_rejects_wrong_version(pair):
    user, server_side = pair
    user.sendall(b"\x04\x01\x00")
    with pytest.raises(SocksError, match="Unsupported SOCKS version"):
        negotiate_socks(server_side)


def test_negotiate_rejects_non_connect_command(pair):
    user, server_side = pair
    user.sendall(GREETING + _request(1, bytes(4), 80, command=2))
    with pytest.raises(SocksError, match="CONNECT"):
        negotiate_socks(server_side)


def test_negotiate_rejects_unknown_address_type(pair):
    user, server_side = pair
    user.sendall(GREETING + bytes([5, 1, 0, 5]))
    with pytest.raises(SocksError, match="Unsupported address type"):
        negotiate_socks(server_side)


def test_negotiate_truncated_greeting(pair):
    user, server_side = pair
    user.sendall(b"\x05")
    user.shutdown(socket.SHUT_WR)
    with pytest.raises(SocksError):
        negotiate_socks(server_side)


def test_handle_client_without_tunnel_closes_client(pair):
    user, server_side = pair
    server = ProxyServer()
    user.sendall(GREETING + _request(3, _domain(b"example.com"), 80))
    server.handle_client(server_side)
    assert recv_exactly(user, 12) == b"\x05\x00" + CONNECT_REPLY
    assert user.recv(16) == b""
    assert server.sessions == {}


def test_session_round_trip_through_tunnel():
    server = ProxyServer()
    proxy_end, agent_end = socket.socketpair()
    agent_end.settimeout(5)
    reader = server.attach_tunnel(proxy_end)

    user, inner = socket.socketpair()
    user.settimeout(5)
    user.sendall(GREETING + _request(3, _domain(b"example.com"), 80))
    worker = threading.Thread(target=server.handle_client, args=(inner,), daemon=True)
    worker.start()

    assert recv_exactly(user, 12) == b"\x05\x00" + CONNECT_REPLY
    session_id, length = unpack_header(recv_exactly(agent_end, HEADER_SIZE))
    assert recv_exactly(agent_end, length) == b"example.com:80"

    user.sendall(b"hello")
    assert recv_exactly(agent_end, HEADER_SIZE + 5) == encode_frame(session_id, b"hello")

    agent_end.sendall(encode_frame(session_id, b"world"))
    assert recv_exactly(user, 5) == b"world"

    user.close()
    worker.join(5)
    assert not worker.is_alive()
    assert session_id not in server.sessions

    agent_end.close()
    reader.join(5)
    assert not reader.is_alive()


def test_read_tunnel_skips_unknown_sessions(pair):
    client_near, client_far = pair
    server = ProxyServer()
    server.sessions[7] = client_near
    tunnel_near, tunnel_far = socket.socketpair()
    with tunnel_near, tunnel_far:
        tunnel_far.sendall(encode_frame(99, b"lost") + encode_frame(7, b"known"))
        tunnel_far.close()
        server.read_tunnel(tunnel_near)
    assert recv_exactly(client_far, 5) == b"known"
    client_near.close()
    assert client_far.recv(16) == b""


def test_read_tunnel_stops_on_truncated_payload(pair):
    client_near, client_far = pair
    server = ProxyServer()
    server.sessions[7] = client_near
    tunnel_near, tunnel_far = socket.socketpair()
    with tunnel_near, tunnel_far:
        tunnel_far.sendall(struct.pack(">IH", 7, 10) + b"abc")
        tunnel_far.close()
        server.read_tunnel(tunnel_near)
    assert server.sessions == {7: client_near}
    client_near.close()
    assert client_far.recv(16) == b""


def test_read_tunnel_drops_session_when_client_write_fails():
    server = ProxyServer()
    client_near, client_far = socket.socketpair()
    client_far.close()
    server.sessions[7] = client_near
    tunnel_near, tunnel_far = socket.socketpair()
    with tunnel_near, tunnel_far:
        tunnel_far.sendall(encode_frame(7, b"x" * 4096) * 64)
        tunnel_far.close()
        server.read_tunnel(tunnel_near)
    assert 7 not in server.sessions


def test_attach_tunnel_replaces_and_closes_previous():
    server = ProxyServer()
    first_near, first_far = socket.socketpair()
    second_near, second_far = socket.socketpair()
    first_far.settimeout(5)
    server.attach_tunnel(first_near)
    reader = server.attach_tunnel(second_near)
    assert server.tunnel is second_near
    assert first_far.recv(1) == b""
    second_far.close()
    reader.join(5)
    assert not reader.is_alive()
    first_far.close()


def test_serve_socks_invalid_address_is_fatal():
    with pytest.raises(SystemExit) as excinfo:
        ProxyServer().serve_socks("not-an-address")
    assert excinfo.value.code == 1


def test_run_proxy_relay_registers_then_rejects_bad_handshake():
    listener = socket.create_server(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    received = {}

    def fake_relay():
        conn, _ = listener.accept()
        with conn:
            received["header"] = recv_exactly(conn, 8)
            conn.sendall(bytes(32))
            conn.recv(1)

    relay = threading.Thread(target=fake_relay, daemon=True)
    relay.start()
    with listener:
        with pytest.raises(SystemExit):
            run_proxy_relay(f"127.0.0.1:{port}", "127.0.0.1:0", "secret")
        relay.join(5)
    assert received["header"] == b"REGISTER"


def test_run_proxy_relay_unreachable_relay_is_fatal():
    with pytest.raises(SystemExit):
        run_proxy_relay("no-port-here", "127.0.0.1:0", "secret")