"""Route dependencies - container lookup and caller identity."""

from fastapi import Request

from boxoffice.services.container import BoxOffice
from boxoffice.services.rate_limiter import extract_ip, get_client_identifier


def get_box_office(request: Request) -> BoxOffice:
    """The container built by the lifespan (or installed by tests)."""
    return request.app.state.box_office


def client_ip(request: Request) -> str | None:
    """Proxy headers first, then the socket peer."""
    ip = extract_ip(request.headers)
    if ip:
        return ip
    return request.client.host if request.client else None


def client_key(request: Request) -> str:
    return get_client_identifier(ip=client_ip(request))
