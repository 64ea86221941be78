from collections.abc import Awaitable, Callable
from ipaddress import IPv4Network, IPv6Network, ip_address

from fastapi import HTTPException, Request, status

from login_security.core.config import settings
from login_security.services.login_security_service import LoginSecurityService

CaptchaVerifier = Callable[[str], Awaitable[bool]]


def get_login_security(request: Request) -> LoginSecurityService:
    """Return the service built in the application lifespan."""
    service = getattr(request.app.state, "login_security", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Login security unavailable")
    return service


def get_captcha_verifier(request: Request) -> CaptchaVerifier | None:
    return getattr(request.app.state, "captcha_verifier", None)


def _is_trusted(address: str, networks: list[IPv4Network | IPv6Network]) -> bool:
    try:
        ip = ip_address(address)
    except ValueError:
        return False
    return any(ip in network for network in networks)


def get_client_ip(request: Request) -> str:
    """Resolve the client address.

    Forwarding headers are only honoured when the socket peer is a trusted
    proxy. ``X-Forwarded-For`` is walked right to left and the first hop that
    is not itself a trusted proxy is the client.
    """
    if request.client is None:
        return "unknown"
    peer = request.client.host
    networks = settings.trusted_proxy_networks
    if not _is_trusted(peer, networks):
        return peer

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        for hop in reversed(hops):
            if not _is_trusted(hop, networks):
                return hop
        if hops:
            return hops[0]
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return peer
