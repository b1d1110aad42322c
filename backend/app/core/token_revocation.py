"""
Token Revocation System using Redis.

Implements token blacklisting to immediately invalidate JWT tokens
on logout, or all of a user's tokens when an admin suspends the account.
"""

import logging
from redis.exceptions import RedisError
from backend.app.core.redis_client import get_redis
from backend.app.core.config import settings

logger = logging.getLogger(__name__)

# Redis key prefix for blacklisted tokens
TOKEN_BLACKLIST_PREFIX = "blacklist:token:"
USER_TOKENS_PREFIX = "user:tokens:"


async def revoke_token(token: str, user_id: str) -> bool:
    """
    Revoke a specific JWT token by adding it to the blacklist.

    Returns:
        True if successfully revoked, False otherwise
    """
    try:
        redis = await get_redis()
        # Tokens expire on their own; the blacklist entry only has to outlive them
        ttl_seconds = settings.access_token_expire_minutes * 60
        await redis.set(f"{TOKEN_BLACKLIST_PREFIX}{token}", str(user_id), ex=ttl_seconds)
        return True
    except (RedisError, OSError) as exc:
        logger.error("Error revoking token for user %s: %s", user_id, exc)
        return False


async def is_token_revoked(token: str) -> bool:
    """
    Check if a token has been revoked.

    Fails open when Redis is unreachable.
    """
    try:
        redis = await get_redis()
        exists = await redis.exists(f"{TOKEN_BLACKLIST_PREFIX}{token}")
        return exists > 0
    except (RedisError, OSError) as exc:
        logger.warning("Error checking token revocation: %s", exc)
        return False


async def revoke_all_user_tokens(user_id: str) -> bool:
    """
    Revoke all active tokens for a specific user.

    Sets a per-user flag that every token check consults, with a TTL equal
    to the maximum token lifetime.
    """
    try:
        redis = await get_redis()
        ttl_seconds = settings.access_token_expire_minutes * 60
        await redis.set(f"{USER_TOKENS_PREFIX}{user_id}:revoked", "1", ex=ttl_seconds)
        return True
    except (RedisError, OSError) as exc:
        logger.error("Error revoking all tokens for user %s: %s", user_id, exc)
        return False


async def are_user_tokens_revoked(user_id: str) -> bool:
    """
    Check if all tokens for a user have been revoked.
    """
    try:
        redis = await get_redis()
        exists = await redis.exists(f"{USER_TOKENS_PREFIX}{user_id}:revoked")
        return exists > 0
    except (RedisError, OSError) as exc:
        logger.warning("Error checking user token revocation: %s", exc)
        return False


async def clear_user_token_revocation(user_id: str) -> bool:
    """
    Clear the global token revocation flag for a user.
    """
    try:
        redis = await get_redis()
        await redis.delete(f"{USER_TOKENS_PREFIX}{user_id}:revoked")
        return True
    except (RedisError, OSError) as exc:
        logger.error("Error clearing token revocation for user %s: %s", user_id, exc)
        return False
