"""Entry points: the web app, and a tail of a conversation channel on the Event Bus."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import TYPE_CHECKING

from chatrelay.config import get_config
from chatrelay.core.logging_config import setup_logging

if TYPE_CHECKING:
    from chatrelay.config.loader import Config
    from chatrelay.core.events import BusMessage

logger = logging.getLogger(__name__)


def main() -> None:
    config = get_config()
    setup_logging(config.logging.level, config.logging.use_json)
    if not config.redis.url:
        logger.error("REDIS_URL is required")
        sys.exit(1)
    from chatrelay.web.app import app

    logger.info("starting web app", extra={"host": config.web.host, "port": config.web.port})
    app.run(host=config.web.host, port=config.web.port, threaded=True)


def tail() -> None:
    """chatrelay-tail <conversation_id>: print the conversation's events as JSON lines."""
    if len(sys.argv) != 2:
        print("usage: chatrelay-tail <conversation_id>", file=sys.stderr)
        sys.exit(2)
    config = get_config()
    setup_logging(config.logging.level, config.logging.use_json)
    try:
        asyncio.run(run_tail(config, sys.argv[1]))
    except KeyboardInterrupt:
        pass


async def run_tail(config: Config, conversation_id: str, out=None) -> None:
    from chatrelay.core.bus import EventBus
    from chatrelay.core.channels import channel_for

    out = out or sys.stdout
    bus = EventBus(config.redis.url, key_prefix=config.redis.key_prefix)

    async def on_event(message: BusMessage, channel: str) -> None:
        line = {"channel": channel, "event": message.event, **message.data}
        out.write(json.dumps(line, ensure_ascii=False) + "\n")
        out.flush()

    bus.subscribe(channel_for(conversation_id), on_event)
    try:
        await bus.run_listener()
    finally:
        await bus.disconnect()


if __name__ == "__main__":
    main()
