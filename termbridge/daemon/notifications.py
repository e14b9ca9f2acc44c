"""Keyword-based notification triggers and push dispatch.

Detection is plain case-insensitive substring matching over one output chunk.
It over- and under-triggers by nature ("done" matches "abandoned"); the
keyword sets below are behavior, so changing them is a visible decision.
"""

from __future__ import annotations

import logging

from termbridge.models import (
    TRIGGER_ERROR,
    TRIGGER_INPUT_REQUIRED,
    TRIGGER_TASK_COMPLETE,
    NotificationTrigger,
)
from termbridge.ports import NotificationPayload
from termbridge.rest import RestClient

log = logging.getLogger("notifications")

TRIGGER_KEYWORDS: tuple[tuple[str, tuple[str, ...], str], ...] = (
    (TRIGGER_TASK_COMPLETE, ("task complete", "done", "finished"), "Task completed"),
    (TRIGGER_ERROR, ("error", "failed", "exception"), "Error detected"),
    (TRIGGER_INPUT_REQUIRED, ("y/n", "[y/n]", "press enter", "continue?"), "Input required"),
)

TITLES = {
    TRIGGER_TASK_COMPLETE: "Task complete",
    TRIGGER_ERROR: "Error",
    TRIGGER_INPUT_REQUIRED: "Input required",
}

BODY_MAX_LEN = 200


def detect_triggers(text: str) -> list[NotificationTrigger]:
    """At most one trigger per class, in a fixed class order."""
    lowered = text.lower()
    found: list[NotificationTrigger] = []
    for kind, keywords, message in TRIGGER_KEYWORDS:
        if any(k in lowered for k in keywords):
            found.append(NotificationTrigger(kind=kind, message=message))
    return found


def build_payload(
    trigger: NotificationTrigger, *, owner_id: str, session_id: str, chunk: str
) -> NotificationPayload:
    body = " ".join(chunk.split())
    if len(body) > BODY_MAX_LEN:
        body = body[: BODY_MAX_LEN - 3] + "..."
    return NotificationPayload(
        owner_id=owner_id,
        kind=trigger.kind,
        title=TITLES.get(trigger.kind, trigger.message),
        body=body or trigger.message,
        session_id=session_id,
    )


class HttpNotificationDispatcher:
    """Posts notifications to the hosted `send-notification` function."""

    path = "/functions/v1/send-notification"

    def __init__(self, client: RestClient):
        self.client = client

    async def dispatch(self, payload: NotificationPayload) -> None:
        await self.client.request_json(
            "POST",
            self.path,
            json={
                "userId": payload.owner_id,
                "type": payload.kind,
                "title": payload.title,
                "body": payload.body,
                "sessionId": payload.session_id,
            },
        )
        log.debug("Sent %s notification for %s", payload.kind, payload.session_id)
