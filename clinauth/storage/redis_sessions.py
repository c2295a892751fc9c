from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, List, Optional, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from clinauth.logging import get_logger
from clinauth.storage.base import REASON_LOGOUT, REASON_REVOKED, REASON_ROTATED
from clinauth.storage.errors import ConstraintViolation, StoreTimeout, StoreUnavailable
from clinauth.storage.models import Session

logger = get_logger(__name__)

T = TypeVar("T")


class RedisSessionStore:
    """Session records in Redis with native key expiry.

    Layout:
        auth:session:{sid}            JSON session record, EX = session TTL
        auth:user_sessions:{uid}      set of session ids for bulk revocation
        auth:session:tombstone:{sid}  invalidation reason, EX = tombstone TTL
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        tombstone_ttl_seconds: int,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ) -> None:
        self.redis_url = redis_url
        self.tombstone_ttl_seconds = tombstone_ttl_seconds
        self.operation_timeout = operation_timeout
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=operation_timeout,
            socket_connect_timeout=operation_timeout,
        )

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"auth:session:{session_id}"

    @staticmethod
    def _user_key(user_id: str) -> str:
        return f"auth:user_sessions:{user_id}"

    @staticmethod
    def _tombstone_key(session_id: str) -> str:
        return f"auth:session:tombstone:{session_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=self.operation_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _run(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.operation_timeout)
        except (asyncio.TimeoutError, RedisTimeoutError) as exc:
            logger.error("session_store_timeout", operation=operation)
            raise StoreTimeout(
                f"session store timed out during {operation}",
                backend="redis",
                operation=operation,
            ) from exc
        except RedisError as exc:
            logger.error(
                "session_store_unavailable", operation=operation, error=str(exc)
            )
            raise StoreUnavailable(
                f"session store unavailable during {operation}",
                backend="redis",
                operation=operation,
            ) from exc

    def _write_tombstone(self, pipe: Any, session_id: str, reason: str) -> None:
        pipe.set(
            self._tombstone_key(session_id), reason, ex=self.tombstone_ttl_seconds
        )

    async def create(self, session: Session, ttl_seconds: int) -> None:
        async def _create() -> bool:
            if await self.client.exists(self._tombstone_key(session.id)):
                return False
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.set(
                    self._session_key(session.id),
                    json.dumps(session.to_dict()),
                    ex=ttl_seconds,
                    nx=True,
                )
                pipe.sadd(self._user_key(session.user_id), session.id)
                pipe.expire(self._user_key(session.user_id), ttl_seconds)
                created, _, _ = await pipe.execute()
            return bool(created)

        if not await self._run("create", _create()):
            raise ConstraintViolation(
                "session id already used", {"session_id": session.id}
            )

    async def get(self, session_id: str) -> Optional[Session]:
        raw = await self._run("get", self.client.get(self._session_key(session_id)))
        return self._decode(raw, session_id)

    def _decode(self, raw: Optional[str], session_id: str) -> Optional[Session]:
        if not raw:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            # Corrupted record reads as a missing session
            logger.warning("session_record_corrupt", session_id=session_id)
            return None

    async def update(self, session: Session, ttl_seconds: int) -> bool:
        # The user index keeps the expiry set by the newest create
        updated = await self._run(
            "update",
            self.client.set(
                self._session_key(session.id),
                json.dumps(session.to_dict()),
                ex=ttl_seconds,
                xx=True,
            ),
        )
        return bool(updated)

    async def invalidate(self, session_id: str, *, reason: str = REASON_LOGOUT) -> bool:
        async def _invalidate() -> bool:
            raw = await self.client.getdel(self._session_key(session_id))
            if raw is None:
                return False
            session = self._decode(raw, session_id)
            async with self.client.pipeline(transaction=True) as pipe:
                self._write_tombstone(pipe, session_id, reason)
                if session:
                    pipe.srem(self._user_key(session.user_id), session_id)
                await pipe.execute()
            return True

        return await self._run("invalidate", _invalidate())

    async def claim(
        self, session_id: str, *, reason: str = REASON_ROTATED
    ) -> Optional[Session]:
        """Take a live session with GETDEL so only one caller can win it."""

        async def _claim() -> Optional[Session]:
            raw = await self.client.getdel(self._session_key(session_id))
            if raw is None:
                return None
            session = self._decode(raw, session_id)
            tombstone_reason = reason if session and session.is_active else REASON_REVOKED
            async with self.client.pipeline(transaction=True) as pipe:
                self._write_tombstone(pipe, session_id, tombstone_reason)
                if session:
                    pipe.srem(self._user_key(session.user_id), session_id)
                await pipe.execute()
            if session is None or not session.is_active:
                return None
            return session

        return await self._run("claim", _claim())

    async def invalidate_all_for_user(
        self, user_id: str, *, reason: str = REASON_REVOKED
    ) -> int:
        async def _invalidate_all() -> int:
            user_key = self._user_key(user_id)
            session_ids = await self.client.smembers(user_key)
            if not session_ids:
                return 0
            revoked = 0
            async with self.client.pipeline(transaction=True) as pipe:
                for session_id in session_ids:
                    pipe.delete(self._session_key(session_id))
                    self._write_tombstone(pipe, session_id, reason)
                pipe.delete(user_key)
                results = await pipe.execute()
            # Every session contributes a DELETE then a SET to the pipeline
            for deleted in results[:-1:2]:
                revoked += int(deleted or 0)
            return revoked

        return await self._run("invalidate_all_for_user", _invalidate_all())

    async def list_for_user(self, user_id: str) -> List[Session]:
        async def _list() -> List[Session]:
            user_key = self._user_key(user_id)
            session_ids = sorted(await self.client.smembers(user_key))
            if not session_ids:
                return []
            raws = await self.client.mget(
                [self._session_key(session_id) for session_id in session_ids]
            )
            live: List[Session] = []
            stale: List[str] = []
            for session_id, raw in zip(session_ids, raws):
                session = self._decode(raw, session_id)
                if session is None:
                    stale.append(session_id)
                else:
                    live.append(session)
            if stale:
                await self.client.srem(user_key, *stale)
            return live

        return await self._run("list_for_user", _list())

    async def invalidation_reason(self, session_id: str) -> Optional[str]:
        return await self._run(
            "invalidation_reason", self.client.get(self._tombstone_key(session_id))
        )

    async def close(self) -> None:
        await self.client.aclose()
