import asyncio
import logging
from typing import Optional

import requests

import config

logger = logging.getLogger(__name__)


class IdentityError(Exception):
    """Raised when a bearer token cannot be turned into a user identity."""
    pass


class OAuthUnavailable(Exception):
    """Raised when the OAuth client credentials are not configured."""
    pass


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        return ""
    parts = authorization.strip().split(None, 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return authorization.strip()


def _normalize_user(user: dict) -> dict:
    return {
        "id": str(user["id"]),
        "name": user.get("global_name") or user.get("username") or str(user["id"]),
        "avatar": user.get("avatar"),
        "username": user.get("username"),
    }


def _fetch_user(token: str) -> dict:
    try:
        response = requests.get(
            f"{config.DISCORD_API_BASE}/users/@me",
            headers={"Authorization": f"Bearer {token}"},
            timeout=config.IDENTITY_TIMEOUT,
        )
    except requests.Timeout:
        logger.warning("Identity lookup timed out after %ds", config.IDENTITY_TIMEOUT)
        raise IdentityError("Identity service timed out")
    except requests.RequestException as e:
        logger.error("HTTP error calling identity service: %s", e)
        raise IdentityError("Identity service unreachable")
    if not response.ok:
        raise IdentityError("Invalid Discord token")
    try:
        return _normalize_user(response.json())
    except (ValueError, KeyError, TypeError):
        logger.error("Unexpected identity response structure")
        raise IdentityError("Invalid identity response")


async def validate_token(token: str) -> dict:
    """Resolve a bearer token to ``{id, name, avatar}``.

    The HTTP call runs in a worker thread; callers must treat this as a
    suspension point.
    """
    if not token:
        raise IdentityError("Missing token")
    return await asyncio.to_thread(_fetch_user, token)


def _post_token(code: str) -> dict:
    response = requests.post(
        f"{config.DISCORD_API_BASE}/oauth2/token",
        data={
            "client_id": config.DISCORD_CLIENT_ID,
            "client_secret": config.DISCORD_CLIENT_SECRET,
            "grant_type": "authorization_code",
            "code": code,
        },
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        timeout=config.IDENTITY_TIMEOUT,
    )
    return response.json()


async def exchange_code(code: str) -> dict:
    """Exchange an OAuth authorization code for the provider's token bundle."""
    if not config.DISCORD_CLIENT_ID or not config.DISCORD_CLIENT_SECRET:
        raise OAuthUnavailable()
    return await asyncio.to_thread(_post_token, code)


def is_admin(user: dict) -> bool:
    return str(user.get("id")) in config.ADMIN_USER_IDS
