"""Users and login sessions in Redis (sync client, used from request handlers)."""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
from typing import Any, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

USERS_SET_KEY = "chatrelay:users"
USER_PREFIX = "chatrelay:user:"
SESSION_PREFIX = "chatrelay:session:"
SESSION_TTL = 86400  # 24h
PBKDF2_ITERATIONS = 100_000


class UserProfile(BaseModel):
    """What the relay needs to know about the caller."""

    id: str
    name: str
    last_used_model: Optional[str] = None


def _hash_password(password: str, salt: bytes | None = None) -> tuple[str, str]:
    """Return (hex_hash, hex_salt). If salt is None, generate new."""
    if salt is None:
        salt = secrets.token_bytes(32)
    h = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return h.hex(), salt.hex()


def verify_password(password: str, stored_hash: str, stored_salt_hex: str) -> bool:
    try:
        salt = bytes.fromhex(stored_salt_hex)
    except ValueError:
        return False
    h, _ = _hash_password(password, salt)
    return secrets.compare_digest(h, stored_hash)


def create_user(redis_client: Any, login: str, password: str, name: str | None = None) -> UserProfile:
    """Create user. Raises ValueError if the login exists."""
    if redis_client.sismember(USERS_SET_KEY, login):
        raise ValueError("User already exists")
    password_hash, salt_hex = _hash_password(password)
    data = {
        "password_hash": password_hash,
        "salt": salt_hex,
        "name": name or login,
        "last_used_model": None,
    }
    redis_client.set(USER_PREFIX + login, json.dumps(data))
    redis_client.sadd(USERS_SET_KEY, login)
    logger.info("user created", extra={"login": login})
    return UserProfile(id=login, name=data["name"])


def _get_user_data(redis_client: Any, login: str) -> dict[str, Any] | None:
    raw = redis_client.get(USER_PREFIX + login)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def get_user(redis_client: Any, login: str) -> UserProfile | None:
    data = _get_user_data(redis_client, login)
    if data is None:
        return None
    return UserProfile(id=login, name=data.get("name") or login, last_used_model=data.get("last_used_model"))


def verify_user(redis_client: Any, login: str, password: str) -> UserProfile | None:
    data = _get_user_data(redis_client, login)
    if not data:
        return None
    if not verify_password(password, data["password_hash"], data["salt"]):
        return None
    return get_user(redis_client, login)


def set_last_used_model(redis_client: Any, login: str, model: str) -> None:
    data = _get_user_data(redis_client, login)
    if data is None:
        return
    data["last_used_model"] = model
    redis_client.set(USER_PREFIX + login, json.dumps(data))


def create_session(redis_client: Any, login: str) -> str:
    sid = secrets.token_urlsafe(32)
    redis_client.setex(SESSION_PREFIX + sid, SESSION_TTL, json.dumps({"login": login}))
    return sid


def get_session(redis_client: Any, session_id: str) -> dict[str, Any] | None:
    """Session payload (login). Refreshes TTL on access."""
    if not session_id:
        return None
    key = SESSION_PREFIX + session_id
    raw = redis_client.get(key)
    if not raw:
        return None
    redis_client.expire(key, SESSION_TTL)
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def delete_session(redis_client: Any, session_id: str) -> None:
    if session_id:
        redis_client.delete(SESSION_PREFIX + session_id)


def user_for_session(redis_client: Any, session_id: str | None) -> UserProfile | None:
    sess = get_session(redis_client, session_id or "")
    if not sess or not sess.get("login"):
        return None
    return get_user(redis_client, sess["login"])
