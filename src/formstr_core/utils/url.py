"""Relay URL normalization."""

from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_DEFAULT_PORTS = {"ws": 80, "wss": 443}
_SCHEME_MAP = {"http": "ws", "https": "wss"}


def normalize_relay_url(url: str) -> str:
    """Return the canonical form of a relay URL.

    Two spellings of the same relay must map to one connection, so the scheme
    and host are lower-cased, default ports, fragments and trailing slashes are
    dropped, duplicate slashes collapse and query parameters are sorted.
    A missing scheme defaults to ``wss``.
    """
    cleaned = url.strip()
    if not cleaned:
        raise ValueError("Relay URL must not be empty")
    if "://" not in cleaned:
        cleaned = f"wss://{cleaned}"

    parts = urlsplit(cleaned)
    scheme = _SCHEME_MAP.get(parts.scheme.lower(), parts.scheme.lower())
    if scheme not in _DEFAULT_PORTS:
        raise ValueError(f"Unsupported relay URL scheme: {parts.scheme}")
    host = (parts.hostname or "").lower()
    if not host:
        raise ValueError(f"Relay URL has no host: {url}")

    port = parts.port
    netloc = host if port in (None, _DEFAULT_PORTS[scheme]) else f"{host}:{port}"

    path = re.sub(r"/+", "/", parts.path)
    if path.endswith("/"):
        path = path[:-1]

    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit((scheme, netloc, path, query, ""))
