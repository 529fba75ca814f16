"""
Shared slowapi limiter.

Lives outside main.py so feature routers can decorate endpoints without
importing the application module.
"""
from slowapi import Limiter
from starlette.requests import Request


def get_authorization_header(request: Request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"


limiter = Limiter(key_func=get_authorization_header)
