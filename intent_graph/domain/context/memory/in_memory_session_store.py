from typing import Dict, List, Optional, Sequence, Tuple
from datetime import datetime, timedelta
import asyncio
import itertools
import uuid
import structlog
from langchain_core.messages import BaseMessage, messages_from_dict, messages_to_dict

from intent_graph.domain.context.memory.session_store import SessionStore
from intent_graph.domain.errors import LimitExceededError, SessionConflictError, SessionNotFoundError
from intent_graph.domain.models.orchestration_state import AgentContext
from intent_graph.domain.models.session import Session, SessionConfig, ConversationInfo
from intent_graph.infrastructure.observability.logging import agent_logger

logger = structlog.get_logger(__name__)

NAME_MAX_CHARS = 50
PREVIEW_MAX_CHARS = 100

Tenant = Tuple[str, str]


def _human_text(message: dict) -> Optional[str]:
    if message.get("type") != "human":
        return None
    content = message.get("data", {}).get("content")
    return content if isinstance(content, str) else str(content)


class InMemorySessionStore(SessionStore):
    """Process-local session store.

    Sessions are partitioned by tenant (user_id, team_id). Appends are
    serialized per session; create, delete and eviction share one store lock.
    Reads take no lock. Messages are kept serialized so callers never hold
    references into the store.

    The asyncio locks bind to the event loop that first waits on them, so a
    store instance must only be used from one event loop.
    """

    def __init__(self, config: Optional[SessionConfig] = None):
        self.config = config or SessionConfig()
        self.sessions: Dict[Tenant, Dict[str, Session]] = {}
        self._lock = asyncio.Lock()
        self._session_locks: Dict[Tuple[str, str, str], asyncio.Lock] = {}
        # Monotonic touch order, breaks ties between equal updated_at values
        self._sequence = itertools.count()
        self._order: Dict[Tuple[str, str, str], int] = {}

    # Helpers, callers hold the relevant lock

    @staticmethod
    def _tenant(context: AgentContext) -> Tenant:
        return (context.user_id, context.team_id)

    def _session_lock(self, tenant: Tenant, session_id: str) -> asyncio.Lock:
        return self._session_locks.setdefault((*tenant, session_id), asyncio.Lock())

    def _release_lock(self, tenant: Tenant, session_id: str) -> None:
        """Forget the lock of a session that was never created"""
        key = (*tenant, session_id)
        lock = self._session_locks.get(key)
        if lock is not None and not lock.locked() and session_id not in self.sessions.get(tenant, {}):
            del self._session_locks[key]

    @staticmethod
    def _check_parent(session: Session, parent_session_id: Optional[str]) -> None:
        if session.parent_session_id != parent_session_id:
            raise SessionConflictError(session.session_id, parent_session_id, session.parent_session_id)

    def _touch(self, tenant: Tenant, session: Session, now: Optional[datetime] = None) -> None:
        session.updated_at = now or datetime.utcnow()
        self._order[(*tenant, session.session_id)] = next(self._sequence)

    def _recency(self, tenant: Tenant, session: Session):
        return (session.updated_at, self._order.get((*tenant, session.session_id), -1))

    def _live(self, tenant: Tenant, session_id: str) -> Optional[Session]:
        session = self.sessions.get(tenant, {}).get(session_id)
        if session is None:
            return None
        if session.is_expired():
            self._remove(tenant, session_id)
            return None
        return session

    def _top_level(self, tenant: Tenant) -> List[Session]:
        return [
            session for session in self.sessions.get(tenant, {}).values()
            if session.parent_session_id is None and not session.is_expired()
        ]

    def _oldest_evictable(self, tenant: Tenant) -> Optional[str]:
        candidates = [session for session in self._top_level(tenant) if not session.pinned]
        if not candidates:
            return None
        oldest = min(candidates, key=lambda session: self._recency(tenant, session))
        return oldest.session_id

    def _remove(self, tenant: Tenant, session_id: str) -> List[str]:
        """Remove a session and its sub-sessions, returns the removed ids"""
        partition = self.sessions.get(tenant, {})
        removed = []
        for sid in [session_id] + [
            s.session_id for s in partition.values() if s.parent_session_id == session_id
        ]:
            if partition.pop(sid, None) is not None:
                removed.append(sid)
            self._order.pop((*tenant, sid), None)
            self._session_locks.pop((*tenant, sid), None)
        return removed

    def _create(
        self,
        tenant: Tenant,
        name: Optional[str],
        session_id: Optional[str],
        evict: bool,
        config: SessionConfig,
        parent_session_id: Optional[str]
    ) -> Session:
        session_id = session_id or str(uuid.uuid4())

        if parent_session_id is None:
            current = len(self._top_level(tenant))
            if current >= config.max_conversations:
                candidate = self._oldest_evictable(tenant)
                if not evict or candidate is None:
                    raise LimitExceededError(
                        f"Conversation limit reached ({config.max_conversations}). "
                        "Delete or unpin a conversation to start a new one.",
                        limit=config.max_conversations,
                        current=current,
                        eviction_candidate=candidate
                    )
                self._remove(tenant, candidate)
                agent_logger.log_session_update(candidate, "evicted", {"reason": "conversation_limit"})

        now = datetime.utcnow()
        session = Session(
            session_id=session_id,
            user_id=tenant[0],
            team_id=tenant[1],
            name=name,
            parent_session_id=parent_session_id,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(hours=config.ttl_hours) if config.ttl_hours else None
        )
        self.sessions.setdefault(tenant, {})[session_id] = session
        self._touch(tenant, session, now)
        agent_logger.log_session_update(session_id, "created", {"parent_session_id": parent_session_id})
        return session

    def _info(self, session: Session) -> ConversationInfo:
        first_message = None
        for message in session.messages:
            text = _human_text(message)
            if text is not None:
                first_message = text[:PREVIEW_MAX_CHARS]
                break
        return ConversationInfo(
            session_id=session.session_id,
            name=session.name,
            message_count=len(session.messages),
            first_message=first_message,
            pinned=session.pinned,
            created_at=session.created_at,
            updated_at=session.updated_at
        )

    # SessionStore

    async def load(self, session_id, context):
        # Appends swap the message list whole, a read never sees a partial write
        session = self._live(self._tenant(context), session_id)
        if session is None:
            return []
        return messages_from_dict(session.messages)

    async def append(self, session_id, messages, context, config=None, parent_session_id=None):
        config = config or self.config
        tenant = self._tenant(context)
        serialized = messages_to_dict(list(messages))

        try:
            async with self._session_lock(tenant, session_id):
                dropped = await self._append(
                    tenant, session_id, serialized, config, parent_session_id
                )
        finally:
            self._release_lock(tenant, session_id)

        if dropped:
            logger.debug("Trimmed session window", session_id=session_id, dropped=dropped)

    async def _append(self, tenant, session_id, serialized, config, parent_session_id) -> int:
        session = self._live(tenant, session_id)
        if session is None:
            async with self._lock:
                session = self._live(tenant, session_id) or self._create(
                    tenant,
                    name=None,
                    session_id=session_id,
                    evict=config.auto_evict,
                    config=config,
                    parent_session_id=parent_session_id
                )
        self._check_parent(session, parent_session_id)

        combined = session.messages + serialized
        dropped = max(0, len(combined) - config.max_messages)
        session.messages = combined[dropped:]

        if session.name is None:
            for message in serialized:
                text = _human_text(message)
                if text:
                    session.name = text[:NAME_MAX_CHARS]
                    break

        now = datetime.utcnow()
        self._touch(tenant, session, now)
        if config.ttl_hours:
            session.expires_at = now + timedelta(hours=config.ttl_hours)

        return dropped

    async def create(self, context, name=None, session_id=None, evict=False, config=None,
                     parent_session_id=None):
        tenant = self._tenant(context)
        async with self._lock:
            if session_id is not None:
                existing = self._live(tenant, session_id)
                if existing is not None:
                    self._check_parent(existing, parent_session_id)
                    return existing.model_copy(deep=True)
            session = self._create(
                tenant, name, session_id, evict, config or self.config, parent_session_id
            )
            return session.model_copy(deep=True)

    async def list(self, context):
        tenant = self._tenant(context)
        async with self._lock:
            sessions = sorted(
                self._top_level(tenant),
                key=lambda session: self._recency(tenant, session),
                reverse=True
            )
            return [self._info(session) for session in sessions]

    async def get(self, session_id, context):
        tenant = self._tenant(context)
        async with self._lock:
            session = self._live(tenant, session_id)
            return self._info(session) if session is not None else None

    async def delete(self, session_id, context):
        tenant = self._tenant(context)
        async with self._lock:
            if self._live(tenant, session_id) is None:
                raise SessionNotFoundError(session_id)
            removed = self._remove(tenant, session_id)
        agent_logger.log_session_update(session_id, "deleted", {"removed": removed})

    async def rename(self, session_id, name, context):
        tenant = self._tenant(context)
        async with self._lock:
            session = self._live(tenant, session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            session.name = name
            self._touch(tenant, session)
        agent_logger.log_session_update(session_id, "renamed", {"name": name})

    async def pin(self, session_id, pinned, context):
        tenant = self._tenant(context)
        async with self._lock:
            session = self._live(tenant, session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            session.pinned = pinned
            self._touch(tenant, session)
        agent_logger.log_session_update(session_id, "pinned" if pinned else "unpinned")

    async def count(self, context):
        async with self._lock:
            return len(self._top_level(self._tenant(context)))

    async def oldest_evictable(self, context):
        async with self._lock:
            return self._oldest_evictable(self._tenant(context))

    async def cleanup(self):
        async with self._lock:
            removed = 0
            for tenant, partition in list(self.sessions.items()):
                expired = [sid for sid, session in partition.items() if session.is_expired()]
                for sid in expired:
                    removed += len(self._remove(tenant, sid))
            if removed:
                logger.info("Expired sessions removed", count=removed)
            return removed
