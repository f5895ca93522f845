from __future__ import annotations

from typing import Optional


def redirect_origin(request_origin: str, forwarded_host: Optional[str], *, development: bool) -> str:
    """
    Origin used for post-login redirects.

    Behind a proxy the public host arrives in `x-forwarded-host`; local development
    always stays on the request origin.
    """
    origin = (request_origin or "").rstrip("/")
    if development:
        return origin
    host = (forwarded_host or "").split(",", 1)[0].strip()
    if host and "/" not in host:
        return f"https://{host}"
    return origin
