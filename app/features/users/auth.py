"""
Appwrite authentication: JWT decoding and account lookup.

Appwrite issues the session JWT. The API trusts its claims only after the
referenced account is confirmed through the Appwrite server SDK, which is
done once per user when the local record is first created.
"""
import jwt
from typing import Optional
from fastapi import HTTPException, status
from starlette.concurrency import run_in_threadpool
from appwrite.client import Client
from appwrite.services.users import Users
from appwrite.exception import AppwriteException

from app.core import config
from app.utils import get_logger


log = get_logger(__name__)


class AppwriteClient:
    """Lazily built, process-wide Appwrite server client."""

    _instance: Optional[Client] = None

    @classmethod
    def get_client(cls) -> Client:
        if cls._instance is None:
            if not (config.APPWRITE_ENDPOINT and config.APPWRITE_PROJECT_ID and config.APPWRITE_API_KEY):
                log.error("Appwrite is not configured; set APPWRITE_ENDPOINT, APPWRITE_PROJECT_ID and APPWRITE_API_KEY")
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail="Authentication backend not configured",
                )
            client = Client()
            client.set_endpoint(config.APPWRITE_ENDPOINT)
            client.set_project(config.APPWRITE_PROJECT_ID)
            client.set_key(config.APPWRITE_API_KEY)
            cls._instance = client
        return cls._instance


def verify_jwt_token(token: str) -> dict:
    """
    Decode an Appwrite session JWT and return its claims.

    Raises:
        HTTPException: 401 if the token is malformed or expired
    """
    try:
        return jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": True}
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        log.info("Rejected token: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_appwrite_user(appwrite_id: str) -> dict:
    """
    Fetch an Appwrite account and return its e-mail and display name.

    The SDK is synchronous, so the call runs in the threadpool.

    Raises:
        HTTPException: 401 if Appwrite does not know the account
    """
    client = AppwriteClient.get_client()
    try:
        account = await run_in_threadpool(Users(client).get, appwrite_id)
    except AppwriteException as e:
        log.warning("Appwrite lookup failed for %s: %s", appwrite_id, e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Failed to verify user: {str(e)}",
        )

    if not isinstance(account, dict):
        account = account.to_dict() if hasattr(account, "to_dict") else vars(account)
    return {
        "email": account.get("email") or "",
        "name": account.get("name") or "Unknown",
    }
