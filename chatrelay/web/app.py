"""Web API: conversations and relayed completions. Session auth in Redis.

Two delivery paths for the same turn:
- ``POST /conversations/<id>/messages`` publishes events on the conversation
  channel; clients follow them on ``GET /conversations/<id>/events``.
- ``POST /conversations/<id>/messages/stream`` writes the events straight into
  the response as Server-Sent Events.
"""

from __future__ import annotations

import asyncio
import logging
import os
import queue
import threading
import time
from typing import Any, Optional

from flask import Flask, Response, g, jsonify, make_response, request, stream_with_context
from pydantic import BaseModel, ValidationError, field_validator

from chatrelay.config.loader import Config, get_config
from chatrelay.core.bus import EventBus, redis_channel
from chatrelay.core.channels import can_subscribe, channel_for
from chatrelay.core.errors import SourceError, format_source_error, status_for_error
from chatrelay.core.events import BusMessage
from chatrelay.core.keepalive import DisconnectProbe
from chatrelay.core.orchestrator import TurnResult, build_orchestrator
from chatrelay.core.sinks import KEEPALIVE_FRAME, BusEventSink, EventSink, FramedEventSink, format_sse
from chatrelay.memory.conversations import ConversationNotFoundError, ConversationStore
from chatrelay.memory.users import (
    SESSION_TTL,
    UserProfile,
    create_session,
    delete_session,
    set_last_used_model,
    verify_user,
)
from chatrelay.web.auth import SESSION_COOKIE_NAME, get_redis, require_user

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}

app = Flask(__name__)
app.config["CHATRELAY"] = get_config()
_secret_key = app.config["CHATRELAY"].web.secret_key or "change-me-in-production"
app.secret_key = _secret_key
if _secret_key == "change-me-in-production":
    logger.warning("CHATRELAY_SECRET_KEY not set; using default. Set it in production.")


class SendMessageRequest(BaseModel):
    message: str
    model: Optional[str] = None

    @field_validator("message")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("message must not be empty")
        return v

    @field_validator("model")
    @classmethod
    def _blank_model_is_none(cls, v: Optional[str]) -> Optional[str]:
        return (v or "").strip() or None


def _config() -> Config:
    return app.config["CHATRELAY"]


def _store_call(method: str, *args: Any) -> Any:
    """Run one ConversationStore call on a fresh loop (sync view -> async store)."""
    config = _config()

    async def call():
        store = ConversationStore(config.redis.url, key_prefix=config.redis.key_prefix)
        try:
            return await getattr(store, method)(*args)
        finally:
            await store.close()

    return asyncio.run(call())


async def _relay_turn(
    config: Config,
    conversation_id: str,
    user: UserProfile,
    text: str,
    model: Optional[str],
    sink: Optional[EventSink] = None,
    is_disconnected: Optional[DisconnectProbe] = None,
) -> TurnResult:
    """One turn. Without a sink, events go to the conversation channel on the bus."""
    orchestrator = build_orchestrator(config)
    bus = None
    if sink is None:
        bus = EventBus(config.redis.url, key_prefix=config.redis.key_prefix)
        sink = BusEventSink(bus, config.streaming.event_name)
    try:
        return await orchestrator.send_message(
            conversation_id, user, text, sink, model=model, is_disconnected=is_disconnected
        )
    finally:
        await orchestrator.close()
        if bus is not None:
            await bus.disconnect()


def _error_text(exc: Exception) -> str:
    if isinstance(exc, SourceError):
        return exc.description
    return format_source_error(exc)


def _owned_conversation(conversation_id: str):
    """(conversation, None) for the owner, else (None, error response)."""
    try:
        conversation = _store_call("get_conversation", conversation_id)
    except ConversationNotFoundError:
        return None, (jsonify({"ok": False, "error": "Conversation not found"}), 404)
    if not can_subscribe(g.user.id, channel_for(conversation_id), conversation):
        return None, (jsonify({"ok": False, "error": "Forbidden"}), 403)
    return conversation, None


def _parse_send_request():
    try:
        return SendMessageRequest.model_validate(request.get_json(silent=True) or {}), None
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "body"
        return None, (jsonify({"ok": False, "error": f"{field}: {first.get('msg')}"}), 400)


def _set_session_cookie(resp, sid: str) -> None:
    secure = (
        os.getenv("HTTPS", "").lower() in ("1", "true", "yes")
        or os.getenv("FLASK_ENV") == "production"
    )
    resp.set_cookie(
        SESSION_COOKIE_NAME,
        sid,
        max_age=SESSION_TTL,
        httponly=True,
        samesite="Lax",
        secure=secure,
    )


# ----- Auth -----
@app.route("/login", methods=["POST"])
def login():
    data = request.get_json(silent=True) or {}
    login_name = (data.get("login") or "").strip()
    password = data.get("password") or ""
    if not login_name or not password:
        return jsonify({"ok": False, "error": "login and password are required"}), 400
    r = get_redis()
    user = verify_user(r, login_name, password)
    if user is None:
        logger.info("login failed", extra={"login": login_name})
        return jsonify({"ok": False, "error": "Invalid login or password"}), 401
    sid = create_session(r, login_name)
    resp = make_response(jsonify({"ok": True, "user": user.model_dump()}))
    _set_session_cookie(resp, sid)
    return resp


@app.route("/logout", methods=["POST"])
def logout():
    sid = request.cookies.get(SESSION_COOKIE_NAME)
    if sid:
        delete_session(get_redis(), sid)
    resp = make_response(jsonify({"ok": True}))
    resp.delete_cookie(SESSION_COOKIE_NAME)
    return resp


# ----- Conversations -----
@app.route("/conversations", methods=["GET"])
@require_user
def list_conversations():
    conversations = _store_call("list_conversations", g.user.id)
    return jsonify({"ok": True, "conversations": [c.model_dump() for c in conversations]})


@app.route("/conversations", methods=["POST"])
@require_user
def create_conversation():
    data = request.get_json(silent=True) or {}
    model = (data.get("model") or "").strip() or None
    conversation = _store_call("create_conversation", g.user.id, _config().title.placeholder, model)
    return jsonify({"ok": True, "conversation": conversation.model_dump()}), 201


@app.route("/conversations/<conversation_id>/messages", methods=["GET"])
@require_user
def list_messages(conversation_id):
    _, error = _owned_conversation(conversation_id)
    if error:
        return error
    messages = _store_call("get_messages", conversation_id)
    return jsonify({"ok": True, "messages": [m.model_dump() for m in messages]})


@app.route("/conversations/<conversation_id>/messages", methods=["POST"])
@require_user
def send_message(conversation_id):
    body, error = _parse_send_request()
    if error:
        return error
    _, error = _owned_conversation(conversation_id)
    if error:
        return error
    user: UserProfile = g.user
    if body.model:
        set_last_used_model(get_redis(), user.id, body.model)
    try:
        asyncio.run(_relay_turn(_config(), conversation_id, user, body.message, body.model))
    except ConversationNotFoundError:
        return jsonify({"ok": False, "error": "Conversation not found"}), 404
    except Exception as exc:
        return jsonify({"ok": False, "error": _error_text(exc)}), status_for_error(exc)
    return jsonify({"ok": True})


@app.route("/conversations/<conversation_id>/messages/stream", methods=["POST"])
@require_user
def stream_message(conversation_id):
    body, error = _parse_send_request()
    if error:
        return error
    _, error = _owned_conversation(conversation_id)
    if error:
        return error
    user: UserProfile = g.user
    if body.model:
        set_last_used_model(get_redis(), user.id, body.model)

    config = _config()
    frames: queue.Queue[Optional[str]] = queue.Queue()
    closed = threading.Event()

    async def write(frame: str) -> None:
        frames.put(frame)

    def worker() -> None:
        sink = FramedEventSink(write, config.streaming.event_name)
        try:
            asyncio.run(
                _relay_turn(
                    config,
                    conversation_id,
                    user,
                    body.message,
                    body.model,
                    sink=sink,
                    is_disconnected=closed.is_set,
                )
            )
        except Exception as exc:
            # already delivered to the client as a terminal error frame
            logger.warning(
                "streamed turn failed: %s", _error_text(exc), extra={"conversation_id": conversation_id}
            )
        finally:
            frames.put(None)

    threading.Thread(target=worker, name=f"relay-{conversation_id}", daemon=True).start()

    def event_stream():
        try:
            while True:
                frame = frames.get()
                if frame is None:
                    break
                yield frame
        finally:
            closed.set()

    return Response(stream_with_context(event_stream()), mimetype="text/event-stream", headers=SSE_HEADERS)


@app.route("/conversations/<conversation_id>/events", methods=["GET"])
@require_user
def conversation_events(conversation_id):
    _, error = _owned_conversation(conversation_id)
    if error:
        return error
    config = _config()
    pubsub = get_redis().pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe(redis_channel(channel_for(conversation_id), config.redis.key_prefix))
    window = config.streaming.liveness_window_seconds
    poll = config.streaming.poll_interval_seconds

    def event_stream():
        last_write = time.monotonic()
        try:
            while True:
                message = pubsub.get_message(timeout=poll)
                if message and message.get("type") == "message":
                    try:
                        envelope = BusMessage.model_validate_json(message["data"])
                    except ValidationError as e:
                        logger.warning("dropping malformed event: %s", e)
                        continue
                    yield format_sse(envelope.event, envelope.data)
                    last_write = time.monotonic()
                elif time.monotonic() - last_write >= window:
                    yield KEEPALIVE_FRAME
                    last_write = time.monotonic()
        finally:
            pubsub.close()

    return Response(stream_with_context(event_stream()), mimetype="text/event-stream", headers=SSE_HEADERS)


@app.errorhandler(ConversationNotFoundError)
def _conversation_not_found(e):
    return jsonify({"ok": False, "error": "Conversation not found"}), 404
