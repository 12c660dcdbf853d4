# reversesoxy

A reverse SOCKS5 proxy. A **proxy** runs a SOCKS5 listener on your machine;
an **agent** inside a remote network dials back to it over an authenticated,
AES-CTR encrypted tunnel and opens the requested connections from there. When
neither side can reach the other, both can meet at a **relay**.

## Install

```
pip install .
```

This installs the `reverse-soxy` command.

## Usage

Every mode needs a shared secret, given with `-secret` or in a config file;
without one the command logs a fatal error and exits with status 1.

Proxy (SOCKS5 on `127.0.0.1:1080`, tunnel listener on port 9000):

```
reverse-soxy -secret secret
```

Agent dialing the proxy directly:

```
reverse-soxy -secret secret -tunnel-addr proxy-host:9000
```

Relay accepting both proxy registrations and agents on one port:

```
reverse-soxy -mode relay -secret secret -relay-listen-port 9000
```

Proxy registering with a relay, and an agent reaching it through the relay:

```
reverse-soxy -register -relay-addr relay-host:9000 -secret secret
reverse-soxy -relay-addr relay-host:9000 -secret secret
```

Point any SOCKS5 client at the proxy's listen address.

The component is chosen in this order: `-mode relay` runs a relay;
otherwise `-register` runs a proxy through a relay; otherwise `-relay-addr`
runs an agent through a relay; otherwise `-tunnel-addr` runs a direct agent;
otherwise a direct proxy runs. Any other `-mode` value only changes the tag
printed on each log line.

Ctrl-C or SIGTERM logs "Shutdown signal received, exiting" and stops.

### Options

Every option is accepted with one dash or two (`-secret` or `--secret`).

| Flag | Default | Meaning |
|------|---------|---------|
| `-proxy-listen-addr` | `127.0.0.1:1080` | SOCKS5 listen address (`host:port`, `[v6]:port`) |
| `-tunnel-listen-port` | `9000` | port the direct proxy listens on for agents |
| `-tunnel-addr` | | proxy `host:port` to dial (direct agent) |
| `-secret` | | shared secret |
| `-config` | | YAML config file |
| `-mode` | | `relay` to run a relay; otherwise only the log tag |
| `-relay-listen-port` | `9000` | port the relay listens on |
| `-retry` | `10` | maximum retries for agents; `0` or less means 10 |
| `-register` | off | register the proxy with a relay |
| `-relay-addr` | | relay `host:port` |
| `-debug` | off | debug logging |

A direct agent waits 5 seconds between attempts and gives up after `-retry`
consecutive failed dials or disconnections. An agent through a relay counts
only failed dials and reconnects after every disconnection.

### Config file

Values from the file apply only where the matching flag is left at its default:

```yaml
socks_listen_addr: 127.0.0.1:1080
tunnel_listen_port: 9000
tunnel_addr: proxy-host:9000
secret: secret
relay_listen_port: 9000
relay_addr: relay-host:9000
max_retries: 10
```

```
reverse-soxy -config reverse-soxy.yaml
```

Ports and `max_retries` must be integers; an unreadable or malformed file is a
fatal error.

## Logging

Lines go to standard output as
`<timestamp> <component> <LEVEL> <message>`, with the level coloured
(INFO green, DEBUG yellow, ERROR and FATAL red). Debug lines appear only with
`-debug`.

## Wire format

- Handshake: the dialing side sends HMAC-SHA256 of `handshake` keyed with
  SHA-256 of the secret, then two random 16-byte IVs, one per direction. The
  other side checks the MAC and closes the connection if it does not match.
- Relay connections start with an 8-byte header: `REGISTER` or `AGENT   `.
- Tunnel frames: a 4-byte big-endian session id and a 2-byte big-endian
  payload length, then the payload. The first frame of a session carries the
  target `host:port`.

## Library use

- `reversesoxy.secure`: `derive_key(secret)`, `secure_client(sock, secret)`
  and `secure_server(sock, secret)` return a `SecureConnection` with `recv`,
  `recv_exactly`, `sendall` and `close`; a wrong MAC raises
  `AuthenticationError`.
- `reversesoxy.frames`: `pack_header`, `unpack_header`, `encode_frame` and
  `recv_exactly` (raises `EOFError` on a short read).
- `reversesoxy.proxy`: `negotiate_socks(client)` returns the requested
  target or raises `SocksError`; `ProxyServer(secret)` with `attach_tunnel`,
  `handle_client`, `read_tunnel` and `serve_socks`; `run_proxy` and
  `run_proxy_relay`.
- `reversesoxy.agent`: `Agent(dial=None).serve_tunnel(tunnel)`, `run_agent`
  and `run_agent_relay` (both take an optional `retry_delay` in seconds).
- `reversesoxy.relay`: `Relay(secret)` with `serve(listen_port)` and
  `handle(conn)`; `run_relay`; `run_register(relay_addr, secret)` registers
  with a relay and holds the connection open without a tunnel.
- `reversesoxy.logger`: `init`, `info`, `debug`, `error`, `fatal`.
- `reversesoxy.cli`: `build_parser`, `load_config`, `choose_role`, `main`.

## What it does not do

- The SOCKS5 side offers no authentication and supports only CONNECT; BIND
  and UDP ASSOCIATE are refused.
- The proxy replies success (bound to `127.0.0.1:1080`) before the agent has
  dialed the target. If that dial fails, the client is not told; it simply
  receives no data.
- The relay does not check the secret; it pairs each agent with the oldest
  registered proxy and copies bytes both ways. Each registration serves one
  agent.
- A proxy holds one tunnel at a time; a new agent replaces the previous one.