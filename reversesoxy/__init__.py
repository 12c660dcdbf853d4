"""Reverse SOCKS5 proxy: proxy, agent and relay roles joined by an encrypted, framed tunnel."""

__version__ = "0.1.0"