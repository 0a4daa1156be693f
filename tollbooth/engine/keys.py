"""Identifier extraction for rate limit checks."""

from typing import Any

from tollbooth.exceptions import KeyExtractionError

# Proxy headers checked in order; the first hop of X-Forwarded-For is the client
CLIENT_IP_HEADERS = ("x-forwarded-for", "x-client-ip", "x-real-ip")


def default_key_generator(source: Any) -> str:
    """Derive a rate limit key from a request-like source.

    Strings are used as-is. Objects exposing ``headers`` are searched for
    proxy IP headers, then ``source.client.host`` is used.

    Args:
        source: Identifier string or request object

    Returns:
        Rate limit key

    Raises:
        KeyExtractionError: If no identifier can be found
    """
    if isinstance(source, str):
        return source

    headers = getattr(source, "headers", None)
    if headers is not None:
        lookup = {str(name).lower(): value for name, value in headers.items()}
        for name in CLIENT_IP_HEADERS:
            value = lookup.get(name)
            if value:
                client_ip = str(value).split(",")[0].strip()
                if client_ip:
                    return client_ip

    client = getattr(source, "client", None)
    host = getattr(client, "host", None)
    if host:
        return str(host)

    raise KeyExtractionError(
        f"Cannot derive a rate limit key from {type(source).__name__}"
    )
