"""
WebSocket consumer exposing collaborative editing of one document.

Client → server messages::

    {"type": "focus", "field_name": "summary", "cursor_position": 3}
    {"type": "cursor", "field_name": "summary", "cursor_position": 4,
     "selection_start": 1, "selection_end": 4}
    {"type": "field_update", "field_name": "summary", "content": "..."}
    {"type": "leave"}

Server → client messages::

    {"type": "roster", "editors": [<presence row>, ...]}
    {"type": "field_update", "update": <broadcast envelope>}
    {"type": "error", "error": "..."}
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from channels.generic.websocket import AsyncWebsocketConsumer
from django.core.serializers.json import DjangoJSONEncoder

from .hub import CollaborationHub, get_hub
from .subscription import DocumentSubscription, RosterChanged

logger = logging.getLogger(__name__)

MAX_MESSAGE_SIZE = 65536  # bytes


def _optional_offset(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"'{key}' must be a non-negative integer")
    return value


def _required_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or (key == "field_name" and not value):
        raise ValueError(f"'{key}' must be a string")
    return value


class CollaborationConsumer(AsyncWebsocketConsumer):
    """
    One connection = one user editing one document.

    Route it with a ``document_id`` URL kwarg behind ``AuthMiddlewareStack``
    (see ``coedit.routing``). Pass a specific hub with
    ``CollaborationConsumer.as_asgi(hub=my_hub)``; the default hub is used
    otherwise.
    """

    hub: Optional[CollaborationHub] = None

    async def connect(self):
        """Handle WebSocket connection"""
        self.document_id = None
        self.user_id = None
        self._subscription: Optional[DocumentSubscription] = None
        self._pump_task: Optional[asyncio.Task] = None

        user = self.scope.get("user")
        if user is None or not getattr(user, "is_authenticated", False):
            logger.warning("Rejected unauthenticated collaboration connection")
            await self.close(code=4401)
            return

        try:
            self.document_id = int(self.scope["url_route"]["kwargs"]["document_id"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Rejected collaboration connection without a document id")
            await self.close(code=4400)
            return

        self.user_id = str(user.pk)
        self._hub = self.hub or get_hub()
        await self.accept()

        self._subscription = await self._hub.subscribe(self.document_id)
        self._pump_task = asyncio.ensure_future(self._pump())
        logger.debug("User %s joined document %s", self.user_id, self.document_id)

    async def disconnect(self, close_code):
        """Handle WebSocket disconnection"""
        task, self._pump_task = getattr(self, "_pump_task", None), None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        subscription = getattr(self, "_subscription", None)
        if subscription is not None:
            await subscription.close()

        if getattr(self, "user_id", None) and getattr(self, "document_id", None) is not None:
            await self._hub.store.remove_presence(self.document_id, self.user_id)
            logger.debug("User %s left document %s", self.user_id, self.document_id)

    async def _pump(self):
        async for event in self._subscription:
            if isinstance(event, RosterChanged):
                await self.send_json(
                    {"type": "roster", "editors": [record.to_dict() for record in event.roster]}
                )
            elif event.update.user_id != self.user_id:
                await self.send_json({"type": "field_update", "update": event.update.to_dict()})

    async def receive(self, text_data=None, bytes_data=None):
        """Handle incoming WebSocket messages"""
        if text_data is None:
            await self.send_error("Expected a JSON text frame")
            return
        if len(text_data.encode("utf-8")) > MAX_MESSAGE_SIZE:
            logger.warning("Message too large (%d chars, max %d bytes)", len(text_data), MAX_MESSAGE_SIZE)
            await self.send_error("Message too large")
            return

        try:
            data = json.loads(text_data)
        except json.JSONDecodeError:
            await self.send_error("Invalid JSON")
            return
        if not isinstance(data, dict):
            await self.send_error("Expected a JSON object")
            return

        handler = {
            "focus": self.handle_focus,
            "cursor": self.handle_cursor,
            "field_update": self.handle_field_update,
            "leave": self.handle_leave,
        }.get(data.get("type"))
        if handler is None:
            await self.send_error(f"Unknown message type: {data.get('type')!r}")
            return

        try:
            await handler(data)
        except ValueError as e:
            await self.send_error(str(e))

    async def handle_focus(self, data: Dict[str, Any]):
        field_name = _required_str(data, "field_name")
        await self._hub.store.remove_other_fields(self.document_id, self.user_id, field_name)
        await self.handle_cursor(data)

    async def handle_cursor(self, data: Dict[str, Any]):
        await self._hub.store.upsert_presence(
            self.document_id,
            self.user_id,
            _required_str(data, "field_name"),
            _optional_offset(data, "cursor_position") or 0,
            selection_start=_optional_offset(data, "selection_start"),
            selection_end=_optional_offset(data, "selection_end"),
        )

    async def handle_field_update(self, data: Dict[str, Any]):
        await self._hub.channels.broadcast(
            self.document_id,
            _required_str(data, "field_name"),
            _required_str(data, "content"),
            self.user_id,
        )

    async def handle_leave(self, data: Dict[str, Any]):
        await self._hub.store.remove_presence(self.document_id, self.user_id)

    async def send_error(self, error: str, **context) -> None:
        """Send an error response to the client with consistent formatting."""
        response: Dict[str, Any] = {"type": "error", "error": error}
        response.update(context)
        await self.send_json(response)

    async def send_json(self, data: Dict[str, Any]):
        """Send JSON message to client with Django type support"""
        await self.send(text_data=json.dumps(data, cls=DjangoJSONEncoder))
