"""Web auth: session cookie -> user, kept in Redis. JSON 401 for API routes."""

from __future__ import annotations

from functools import wraps
from typing import Any

import redis
from flask import current_app, g, jsonify, request

from chatrelay.memory.users import UserProfile, user_for_session

SESSION_COOKIE_NAME = "chatrelay_sid"


def get_redis() -> Any:
    """Sync Redis client for request handlers."""
    config = current_app.config["CHATRELAY"]
    return redis.from_url(config.redis.url, decode_responses=True)


def current_user() -> UserProfile | None:
    sid = request.cookies.get(SESSION_COOKIE_NAME)
    if not sid:
        return None
    return user_for_session(get_redis(), sid)


def require_user(f):
    """Decorator: 401 unless a valid session cookie is present; the user is put on ``g.user``."""

    @wraps(f)
    def wrapped(*args, **kwargs):
        user = current_user()
        if user is None:
            return jsonify({"ok": False, "error": "Unauthorized"}), 401
        g.user = user
        return f(*args, **kwargs)

    return wrapped
