import socket
import threading

import pytest

from reversesoxy.frames import recv_exactly
from reversesoxy.relay import Relay, run_register


def _pair():
    a, b = socket.socketpair()
    a.settimeout(5)
    b.settimeout(5)
    return a, b


def test_register_adds_connection_to_registry():
    relay = Relay("secret")
    relay_side, remote = _pair()
    with relay_side, remote:
        remote.sendall(b"REGISTER")
        relay.handle(relay_side)
        assert list(relay.registry) == [relay_side]


def test_agent_is_bridged_to_registered_proxy():
    relay = Relay("secret")
    proxy_relay, proxy_remote = _pair()
    agent_relay, agent_remote = _pair()
    with proxy_relay, agent_remote:
        proxy_remote.sendall(b"REGISTER")
        relay.handle(proxy_relay)

        agent_remote.sendall(b"AGENT   ")
        worker = threading.Thread(target=relay.handle, args=(agent_relay,))
        worker.start()

        agent_remote.sendall(b"hello")
        assert recv_exactly(proxy_remote, 5) == b"hello"
        proxy_remote.sendall(b"world")
        assert recv_exactly(agent_remote, 5) == b"world"

        proxy_remote.close()
        worker.join(5)
        assert not worker.is_alive()
        assert agent_remote.recv(1) == b""
        assert len(relay.registry) == 0


def test_agent_without_proxy_is_closed():
    relay = Relay("secret")
    relay_side, remote = _pair()
    with remote:
        remote.sendall(b"AGENT   ")
        relay.handle(relay_side)
        assert remote.recv(1) == b""
        assert len(relay.registry) == 0


def test_unknown_header_is_closed():
    relay = Relay("secret")
    relay_side, remote = _pair()
    with remote:
        remote.sendall(b"HELLOXYZ")
        relay.handle(relay_side)
        assert remote.recv(1) == b""
        assert len(relay.registry) == 0


def test_short_header_is_closed():
    relay = Relay("secret")
    relay_side, remote = _pair()
    with remote:
        remote.sendall(b"AG")
        remote.shutdown(socket.SHUT_WR)
        relay.handle(relay_side)
        assert remote.recv(1) == b""
        assert len(relay.registry) == 0


def test_run_register_sends_header_and_returns_when_closed():
    listener = socket.create_server(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    with listener:
        listener.settimeout(5)
        worker = threading.Thread(target=run_register, args=(f"127.0.0.1:{port}", "secret"))
        worker.start()
        conn, _ = listener.accept()
        with conn:
            conn.settimeout(5)
            assert recv_exactly(conn, 8) == b"REGISTER"
        worker.join(5)
        assert not worker.is_alive()


def test_run_register_exits_when_dial_fails():
    probe = socket.create_server(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    with pytest.raises(SystemExit) as excinfo:
        run_register(f"127.0.0.1:{port}", "secret")
    assert excinfo.value.code == 1


def test_run_register_rejects_malformed_address():
    with pytest.raises(SystemExit) as excinfo:
        run_register("no-port-here", "secret")
    assert excinfo.value.code == 1