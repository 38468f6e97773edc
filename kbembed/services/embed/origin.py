from __future__ import annotations

from typing import Iterable
from urllib.parse import urlsplit


_LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "[::1]"}
_DEFAULT_PORTS = {("http", 80), ("https", 443)}


def canonicalize_origin(value: str | None) -> str | None:
    # Reduce a browser Origin to scheme://host[:port], or None when it cannot be trusted.
    if not value:
        return None
    raw = value.strip()
    if not raw:
        return None
    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if not parts.hostname or not parts.netloc:
        return None
    if parts.username is not None or parts.password is not None:
        return None
    if parts.path not in ("", "/") or parts.query or parts.fragment or raw.endswith(("?", "#")):
        return None

    host = parts.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    if scheme == "http":
        if host not in _LOOPBACK_HOSTS:
            return None
    elif scheme != "https":
        return None

    # Default ports collapse so "https://a.com:443" matches "https://a.com".
    if port is None or (scheme, port) in _DEFAULT_PORTS:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def canonical_allowlist(origins: Iterable[str]) -> set[str]:
    # Entries that fail canonicalization are ignored rather than matched loosely.
    allowed: set[str] = set()
    for origin in origins:
        canonical = canonicalize_origin(origin)
        if canonical:
            allowed.add(canonical)
    return allowed


def is_origin_allowed(origin: str, allowed_origins: Iterable[str]) -> bool:
    return origin in canonical_allowlist(allowed_origins)
