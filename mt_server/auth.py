"""
Authentication utilities for the MobileTester server.

API keys identify the owner of every job. Keys are generated once, shown to
the user, and only their SHA-256 hash is stored.
"""

import hashlib
import secrets
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mt_common.models import User
from mt_common.repository import JobRepository

API_KEY_PREFIX = "mt_"

# HTTP Bearer token authentication scheme
security = HTTPBearer()


def generate_api_key() -> str:
    """
    Generate a new API key with format: mt_<40 random chars>.

    Returns:
        API key string, 43 characters long

    Example:
        >>> generate_api_key().startswith("mt_")
        True
    """
    # 30 random bytes encode to 40 URL-safe characters
    return f"{API_KEY_PREFIX}{secrets.token_urlsafe(30)[:40]}"


def hash_api_key(api_key: str) -> str:
    """Hex-encoded SHA-256 hash of an API key, as stored in the database."""
    return hashlib.sha256(api_key.encode()).hexdigest()


def create_get_current_user_dependency(
    get_repository_func: Callable[[], JobRepository],
) -> Callable[..., Awaitable[User]]:
    """
    Create a get_current_user dependency with repository injection.

    The repository getter lives in app.py, so it is passed in here rather
    than imported.

    Args:
        get_repository_func: Function that returns the JobRepository instance

    Returns:
        Async function usable as a FastAPI dependency
    """

    async def get_current_user_with_repo(
        credentials: HTTPAuthorizationCredentials = Security(security),
        repository: JobRepository = Depends(get_repository_func),
    ) -> User:
        """
        Validate the Bearer API key and return its user.

        Raises:
            HTTPException: 401 if the key is unknown or revoked, or the user is inactive
        """
        api_key_obj = await repository.get_api_key_by_hash(
            hash_api_key(credentials.credentials)
        )

        if not api_key_obj or not api_key_obj.is_active:
            raise HTTPException(
                status_code=401,
                detail="Invalid or revoked API key",
                headers={"WWW-Authenticate": "Bearer"},
            )

        user = await repository.get_user(api_key_obj.user_id)

        if not user or not user.is_active:
            raise HTTPException(
                status_code=401,
                detail="User not found or inactive",
                headers={"WWW-Authenticate": "Bearer"},
            )

        await repository.update_api_key_last_used(api_key_obj.id, datetime.now(UTC))

        return user

    return get_current_user_with_repo
