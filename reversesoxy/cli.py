"""Command line entry point: picks the component to run from flags and an optional YAML file."""

from __future__ import annotations

import argparse
import signal
import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence

import yaml

from . import logger
from .agent import DEFAULT_MAX_RETRIES, run_agent, run_agent_relay
from .proxy import run_proxy, run_proxy_relay
from .relay import run_relay

DEFAULT_SOCKS_ADDR = "127.0.0.1:1080"
DEFAULT_TUNNEL_PORT = 9000
DEFAULT_RELAY_PORT = 9000

_CONFIG_FIELDS = {
    "socks_listen_addr": str,
    "tunnel_listen_port": int,
    "tunnel_addr": str,
    "max_retries": int,
    "secret": str,
    "relay_listen_port": int,
    "relay_addr": str,
}


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser; every option is accepted with one dash or two."""
    parser = argparse.ArgumentParser(
        prog="reverse-soxy",
        description="Reverse SOCKS5 proxy over an encrypted tunnel.",
        allow_abbrev=False,
    )
    parser.add_argument("-debug", "--debug", action="store_true", help="enable debug logging")
    parser.add_argument("-proxy-listen-addr", "--proxy-listen-addr", dest="proxy_listen_addr",
                        default=DEFAULT_SOCKS_ADDR, help="SOCKS5 listen address")
    parser.add_argument("-tunnel-listen-port", "--tunnel-listen-port", dest="tunnel_listen_port",
                        type=int, default=DEFAULT_TUNNEL_PORT,
                        help="Tunnel listen port when in proxy mode")
    parser.add_argument("-tunnel-addr", "--tunnel-addr", dest="tunnel_addr", default="",
                        help="Tunnel address (IP:port) to dial (agent mode)")
    parser.add_argument("-secret", "--secret", dest="secret", default="",
                        help="shared secret for tunnel encryption/authentication")
    parser.add_argument("-config", "--config", dest="config", default="",
                        help="YAML config file path")
    parser.add_argument("-mode", "--mode", dest="mode", default="",
                        help="Component mode: proxy (default), agent, relay")
    parser.add_argument("-relay-listen-port", "--relay-listen-port", dest="relay_listen_port",
                        type=int, default=DEFAULT_RELAY_PORT,
                        help="Port for both Proxy registrations and Agent tunnels (relay mode)")
    parser.add_argument("-retry", "--retry", dest="retry", type=int, default=DEFAULT_MAX_RETRIES,
                        help="Maximum number of retries")
    parser.add_argument("-register", "--register", action="store_true",
                        help="Proxy registers its availability to Relay server")
    parser.add_argument("-relay-addr", "--relay-addr", dest="relay_addr", default="",
                        help="Relay server address (IP:port) for registration or agent dialing")
    return parser


def _coerce(name: str, value: object, kind: type) -> object:
    if kind is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{name}: expected an integer, got {value!r}")
        return value
    if isinstance(value, (dict, list)):
        raise ValueError(f"{name}: expected a scalar, got {value!r}")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def load_config(path: str) -> dict:
    """Read the YAML config file; absent keys get empty-string or zero values."""
    with open(path, encoding="utf-8") as handle:
        document = yaml.safe_load(handle)
    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise ValueError("config file must hold a mapping")
    config = {name: kind() for name, kind in _CONFIG_FIELDS.items()}
    for name, kind in _CONFIG_FIELDS.items():
        value = document.get(name)
        if value is not None:
            config[name] = _coerce(name, value, kind)
    return config


def choose_role(mode: str, tunnel_addr: str, register: bool) -> str:
    """Return the component tag used in log lines."""
    if mode:
        return mode
    if tunnel_addr:
        return "AGENT"
    if register:
        return "REGISTER"
    return "PROXY"


def _check_host_port(address: str) -> None:
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in address {address!r}")
        if not address[end + 1:].startswith(":"):
            raise ValueError(f"missing port in address {address!r}")
        return
    host, sep, _port = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {address!r}")
    if ":" in host:
        raise ValueError(f"too many colons in address {address!r}")


def _apply_config(args: argparse.Namespace) -> None:
    try:
        config = load_config(args.config)
    except OSError as exc:
        logger.fatal("Failed to read config: %s", exc)
    except (yaml.YAMLError, ValueError) as exc:
        logger.fatal("Failed to parse config: %s", exc)

    if args.proxy_listen_addr == DEFAULT_SOCKS_ADDR and config["socks_listen_addr"]:
        args.proxy_listen_addr = config["socks_listen_addr"]
    if args.tunnel_listen_port == DEFAULT_TUNNEL_PORT and config["tunnel_listen_port"]:
        args.tunnel_listen_port = config["tunnel_listen_port"]
    if not args.tunnel_addr and config["tunnel_addr"]:
        args.tunnel_addr = config["tunnel_addr"]
    if not args.secret and config["secret"]:
        args.secret = config["secret"]
    if args.relay_listen_port == DEFAULT_RELAY_PORT and config["relay_listen_port"]:
        args.relay_listen_port = config["relay_listen_port"]
    if not args.relay_addr and config["relay_addr"]:
        args.relay_addr = config["relay_addr"]
    if args.retry == DEFAULT_MAX_RETRIES and config["max_retries"]:
        args.retry = config["max_retries"]
    logger.debug("Loaded config from %s: %s", args.config, config)


def _run(args: argparse.Namespace) -> None:
    if args.config:
        _apply_config(args)
    if not args.secret:
        logger.fatal("Shared secret required: use -secret flag or config")
    if args.tunnel_addr:
        try:
            _check_host_port(args.tunnel_addr)
        except ValueError as exc:
            logger.fatal("Invalid tunnel-addr: %s", exc)

    role = choose_role(args.mode, args.tunnel_addr, args.register)
    logger.init(args.debug, role)
    logger.info("Debug logging enabled: %s", "true" if args.debug else "false")
    logger.debug(
        "CLI flags: proxy-listen-addr=%s, tunnel-listen-port=%d, tunnel-addr=%s, config=%s, "
        "mode=%s, relay-listen-port=%d, register=%s, relay-addr=%s",
        args.proxy_listen_addr, args.tunnel_listen_port, args.tunnel_addr, args.config,
        args.mode, args.relay_listen_port, args.register, args.relay_addr,
    )

    if args.mode == "relay":
        run_relay(args.relay_listen_port, args.secret)
    elif args.register:
        run_proxy_relay(args.relay_addr, args.proxy_listen_addr, args.secret)
    elif args.relay_addr:
        run_agent_relay(args.relay_addr, args.secret, args.retry)
    elif args.tunnel_addr:
        run_agent(args.tunnel_addr, args.secret, args.retry)
    else:
        run_proxy(args.proxy_listen_addr, args.tunnel_listen_port, args.secret)


def _interrupt(signum, frame) -> None:
    raise KeyboardInterrupt


@contextmanager
def _sigterm_as_interrupt() -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = signal.signal(signal.SIGTERM, _interrupt)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Parse the command line and run the selected component."""
    args = build_parser().parse_args(argv)
    with _sigterm_as_interrupt():
        try:
            _run(args)
        except KeyboardInterrupt:
            logger.info("Shutdown signal received, exiting")
    return 0