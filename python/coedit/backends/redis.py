"""
Redis-backed presence backend for multi-node production deployments.

Each document uses two keys:
- a hash of JSON presence rows, keyed by ``["user_id", "field_name"]``
- a sorted set over the same members, scored by ``last_seen`` epoch

The sorted set makes the staleness query a single range read
(ZREVRANGEBYSCORE), already ordered newest first. Each read first prunes the
rows at or below the cutoff from both keys.
"""

import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis as redis_lib

from ..exceptions import DeleteFailure, FetchFailure, UpsertFailure
from ..records import PresenceRecord
from .base import PresenceBackend

logger = logging.getLogger(__name__)

ROW_TTL = 300  # seconds - idle documents expire entirely after this long


def _member(user_id: str, field_name: str) -> str:
    return json.dumps([user_id, field_name])


class RedisPresenceBackend(PresenceBackend):
    """
    Redis-backed presence store.

    Redis keys used per document:
        coedit:presence:{document_id}:rows  — hash (member → JSON row)
        coedit:presence:{document_id}:seen  — sorted set (member → last_seen epoch)

    Profiles are resolved through the Django user model.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "coedit:presence",
        ttl: int = ROW_TTL,
    ):
        self._client = redis_lib.from_url(redis_url, decode_responses=True)
        self._prefix = key_prefix
        self._ttl = ttl

        # Verify connection
        try:
            self._client.ping()
            logger.info("RedisPresenceBackend connected to %s", redis_url)
        except redis_lib.RedisError as e:
            logger.error("RedisPresenceBackend failed to connect: %s", e)
            raise

    def _rows_key(self, document_id: int) -> str:
        return f"{self._prefix}:{document_id}:rows"

    def _seen_key(self, document_id: int) -> str:
        return f"{self._prefix}:{document_id}:seen"

    def select_active(self, document_id: int, since: datetime) -> List[PresenceRecord]:
        try:
            self.cleanup_stale(document_id, since)
            members = self._client.zrevrangebyscore(
                self._seen_key(document_id), "+inf", f"({since.timestamp()}"
            )
            if not members:
                return []
            raw_rows = self._client.hmget(self._rows_key(document_id), members)
        except redis_lib.RedisError as e:
            raise FetchFailure(f"Presence query for document {document_id} failed: {e}") from e

        records = []
        for raw in raw_rows:
            if not raw:
                continue
            try:
                records.append(PresenceRecord.from_dict(json.loads(raw)))
            except (ValueError, KeyError, TypeError):
                logger.warning("Skipping malformed presence row in document %s", document_id)
        return records

    def upsert(self, record: PresenceRecord) -> None:
        member = _member(record.user_id, record.field_name)
        row = record.with_profile(None).to_dict()
        row.pop("users", None)
        try:
            pipe = self._client.pipeline()
            pipe.hset(self._rows_key(record.document_id), member, json.dumps(row))
            pipe.zadd(self._seen_key(record.document_id), {member: record.last_seen.timestamp()})
            pipe.expire(self._rows_key(record.document_id), self._ttl)
            pipe.expire(self._seen_key(record.document_id), self._ttl)
            pipe.execute()
        except redis_lib.RedisError as e:
            raise UpsertFailure(f"Presence write for document {record.document_id} failed: {e}") from e

    def delete(self, document_id: int, user_id: str, keep_field_name: Optional[str] = None) -> int:
        try:
            members = self._client.hkeys(self._rows_key(document_id))
            doomed = []
            for member in members:
                try:
                    member_user, member_field = json.loads(member)
                except (ValueError, TypeError):
                    continue
                if member_user == user_id and member_field != keep_field_name:
                    doomed.append(member)
            if not doomed:
                return 0

            pipe = self._client.pipeline()
            pipe.hdel(self._rows_key(document_id), *doomed)
            pipe.zrem(self._seen_key(document_id), *doomed)
            pipe.execute()
        except redis_lib.RedisError as e:
            raise DeleteFailure(f"Presence delete for document {document_id} failed: {e}") from e

        logger.debug("Removed %d presence rows for %s in %s (Redis)", len(doomed), user_id, document_id)
        return len(doomed)

    def cleanup_stale(self, document_id: int, since: datetime) -> int:
        cutoff = since.timestamp()
        # Get stale members
        stale = self._client.zrangebyscore(self._seen_key(document_id), "-inf", cutoff)
        if not stale:
            return 0

        pipe = self._client.pipeline()
        pipe.zremrangebyscore(self._seen_key(document_id), "-inf", cutoff)
        pipe.hdel(self._rows_key(document_id), *stale)
        pipe.execute()

        logger.debug("Cleaned %d stale presence rows from document %s", len(stale), document_id)
        return len(stale)

    def health_check(self) -> Dict[str, Any]:
        start = time.time()
        try:
            self._client.ping()
            latency = (time.time() - start) * 1000
            return {
                "status": "healthy",
                "backend": "redis",
                "latency_ms": round(latency, 2),
            }
        except redis_lib.RedisError as e:
            latency = (time.time() - start) * 1000
            return {
                "status": "unhealthy",
                "backend": "redis",
                "latency_ms": round(latency, 2),
                "error": str(e),
            }
