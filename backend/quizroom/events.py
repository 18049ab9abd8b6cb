from __future__ import annotations

import logging
from typing import Any, Awaitable, List, Optional

from pymongo import ReturnDocument

from .errors import TransientError
from .gateway import QuizGateway
from .utils import now_ts

logger = logging.getLogger(__name__)


class EventStore:
    """Persist quiz events so clients can poll via HTTP.

    Shares the gateway's database and request timeout. ``append`` and ``list``
    raise ``TransientError`` like any other store call; ``publish``, ``reset``
    and ``drop`` run after a transition is already saved, so a store failure
    there is logged and the transition still stands.
    """

    def __init__(self, gateway: QuizGateway):
        self.gateway = gateway

    @property
    def counters_collection(self):
        return self.gateway.db.quiz_event_counters

    @property
    def events_collection(self):
        return self.gateway.db.quiz_events

    async def append(self, quiz_id: str, payload: dict[str, Any]) -> int:
        """Store a new event for a quiz and return its sequence number."""

        counter_doc = await self.gateway.call(
            self.counters_collection.find_one_and_update(
                {"_id": quiz_id},
                {"$inc": {"seq": 1}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        )

        if not counter_doc:
            # Some Mongo-compatible providers complete the upsert but return
            # ``None`` instead of the updated document.
            counter_doc = await self.gateway.call(self.counters_collection.find_one({"_id": quiz_id}))

        seq = int((counter_doc or {}).get("seq", 1))

        await self.gateway.call(
            self.events_collection.insert_one(
                {
                    "quiz_id": quiz_id,
                    "seq": seq,
                    "timestamp": now_ts(),
                    "payload": payload,
                }
            )
        )
        return seq

    async def list(self, quiz_id: str, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        """Return events for a quiz that occur after the given sequence."""

        query: dict[str, Any] = {"quiz_id": quiz_id}
        if after is not None:
            query["seq"] = {"$gt": after}

        cursor = (
            self.events_collection.find(query)
            .sort("seq", 1)
            .limit(limit)
        )
        docs = await self.gateway.call(self.gateway.collect(cursor))
        return [
            {
                "seq": doc["seq"],
                "timestamp": doc.get("timestamp"),
                "payload": doc.get("payload", {}),
            }
            for doc in docs
        ]

    async def publish(self, quiz_id: str, payload: dict[str, Any]) -> Optional[int]:
        """Append an event for an already-saved transition; ``None`` if it was dropped."""

        return await self._after_transition(quiz_id, payload.get("type", "event"), self.append(quiz_id, payload))

    async def reset(self, quiz_id: str) -> None:
        """Clear stored events for a quiz and emit a reset marker."""

        await self._after_transition(quiz_id, "quiz_reset", self._reset(quiz_id))

    async def drop(self, quiz_id: str) -> None:
        await self._after_transition(quiz_id, "drop", self._drop(quiz_id))

    async def _reset(self, quiz_id: str) -> None:
        await self.gateway.call(self.events_collection.delete_many({"quiz_id": quiz_id}))

        # Sequence numbers keep increasing across resets so pollers holding an
        # old ``after`` value still see the marker.
        await self.append(quiz_id, {"type": "quiz_reset"})

    async def _drop(self, quiz_id: str) -> None:
        await self.gateway.call(self.events_collection.delete_many({"quiz_id": quiz_id}))
        await self.gateway.call(self.counters_collection.delete_many({"_id": quiz_id}))

    async def _after_transition(self, quiz_id: str, what: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except TransientError as exc:
            logger.warning("Dropped %s event for quiz %s: %s", what, quiz_id, exc.message)
            return None
