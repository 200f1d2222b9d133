"""Pulsewatch — URL canonicalisation.

Every URL is stored and looked up in one canonical form so that
``example.com``, ``https://www.example.com/`` and ``HTTPS://WWW.EXAMPLE.COM``
resolve to the same record.
"""

from urllib.parse import urlsplit, urlunsplit


class InvalidUrl(ValueError):
    """Raised when a string cannot be read as an http(s) URL."""


def canonicalize_url(raw: str) -> str:
    """Normalise scheme, host case, ``www`` prefix and root path."""
    candidate = (raw or "").strip()
    if not candidate:
        raise InvalidUrl("Empty URL")
    if "://" not in candidate:
        candidate = f"https://{candidate}"

    parts = urlsplit(candidate)
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        raise InvalidUrl(f"Unsupported scheme: {parts.scheme}")

    host = (parts.hostname or "").lower()
    if not host or "." not in host:
        raise InvalidUrl(f"Missing or invalid host in {raw!r}")

    # Bare registrable domains get the www prefix; subdomains are left alone
    if host.count(".") == 1:
        host = f"www.{host}"

    netloc = host
    if parts.port and not (
        (scheme == "https" and parts.port == 443)
        or (scheme == "http" and parts.port == 80)
    ):
        netloc = f"{host}:{parts.port}"

    path = parts.path
    if path == "/":
        path = ""

    return urlunsplit((scheme, netloc, path, parts.query, ""))
