"""Generation event sink: local persistence with optional dashboard forwarding.

Events are validated against :class:`schemas.GenerationEvent`, stored in the
``generation_events`` table and written to the ``quizfeed.events`` logger as a
JSON line. When ``DASHBOARD_URL`` is configured the event is also forwarded
asynchronously with retry/backoff; forwarding never blocks the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from typing import Any, Dict, Optional

import requests

import db
from engines.base import EventSink
from schemas import GenerationEvent

LOGGER = logging.getLogger("quizfeed.events")


async def _forward_event_with_retry(
    event: Dict[str, Any],
    *,
    url: str,
    headers: Dict[str, str],
    timeout: float = 5.0,
    max_attempts: int = 3,
) -> None:
    """Forward an event to the dashboard with exponential backoff."""

    delay = 0.5
    for attempt in range(1, max_attempts + 1):
        try:
            response = await asyncio.to_thread(
                requests.post,
                url,
                json=event,
                headers=headers,
                timeout=timeout,
            )
            if response.status_code < 500:
                return
            LOGGER.warning(
                "Dashboard responded with status %s on attempt %s", response.status_code, attempt
            )
        except requests.RequestException as exc:
            LOGGER.warning("Failed to forward generation event (attempt %s): %s", attempt, exc)
        if attempt == max_attempts:
            break
        await asyncio.sleep(delay)
        delay *= 2


def _schedule_forward(event: Dict[str, Any], *, url: str, headers: Dict[str, str]) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    coro = _forward_event_with_retry(event, url=url, headers=headers)

    if loop and loop.is_running():
        loop.create_task(coro)
    else:
        threading.Thread(target=lambda: asyncio.run(coro), daemon=True).start()


class DatabaseEventSink(EventSink):
    def __init__(self, dashboard_url: Optional[str] = None, auth: Optional[str] = None):
        self.dashboard_url = dashboard_url
        self.auth = auth

    @classmethod
    def from_env(cls) -> "DatabaseEventSink":
        return cls(os.getenv("DASHBOARD_URL") or None, os.getenv("DASHBOARD_AUTH") or None)

    def emit(self, event: Dict[str, Any]) -> None:
        """Validate, persist and log ``event``; raises ``ValueError`` for malformed events."""

        validated = GenerationEvent.model_validate(event)
        payload = validated.model_dump(mode="json", by_alias=True)
        payload["id"] = db.log_generation_event(payload)
        LOGGER.info(json.dumps(payload, ensure_ascii=False))

        if not self.dashboard_url:
            return
        headers = {"Content-Type": "application/json"}
        if self.auth:
            headers["Authorization"] = self.auth
        _schedule_forward(payload, url=self.dashboard_url, headers=headers)
