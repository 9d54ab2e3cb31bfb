from collections.abc import Mapping

from fastapi import Request

MAX_USER_AGENT_LENGTH = 500


def _first_forwarded(forwarded_for: str | None, real_ip: str | None, peer: str | None) -> str:
    if forwarded_for and forwarded_for.strip():
        return forwarded_for.split(",")[0].strip()
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if peer and peer.strip():
        return peer.strip()
    return "unknown"


def extract_client_ip(request: Request) -> str:
    return _first_forwarded(
        request.headers.get("x-forwarded-for"),
        request.headers.get("x-real-ip"),
        request.client.host if request.client else None,
    )


def extract_user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "").strip()[:MAX_USER_AGENT_LENGTH]


def client_ip_from_environ(environ: Mapping) -> str:
    """Same resolution as extract_client_ip, for Socket.IO's WSGI-style environ."""

    def _get(key: str) -> str | None:
        value = environ.get(key)
        return value if isinstance(value, str) else None

    return _first_forwarded(
        _get("HTTP_X_FORWARDED_FOR"),
        _get("HTTP_X_REAL_IP"),
        _get("REMOTE_ADDR"),
    )
