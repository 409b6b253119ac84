from abc import ABC, abstractmethod
from typing import List, Optional, Sequence
from langchain_core.messages import BaseMessage

from intent_graph.domain.models.orchestration_state import AgentContext
from intent_graph.domain.models.session import Session, SessionConfig, ConversationInfo


def derive_sub_session_id(parent_session_id: str, capability: str) -> str:
    """Session id of a capability's conversational sub-session"""
    return f"{parent_session_id}-{capability}"


class SessionStore(ABC):
    """Conversation history keyed by session id, scoped to (user_id, team_id).

    A session id owned by another tenant behaves exactly like one that does
    not exist.
    """

    @abstractmethod
    async def load(self, session_id: str, context: AgentContext) -> List[BaseMessage]:
        """Ordered messages of the session, empty when it does not exist"""
        pass

    @abstractmethod
    async def append(
        self,
        session_id: str,
        messages: Sequence[BaseMessage],
        context: AgentContext,
        config: Optional[SessionConfig] = None,
        parent_session_id: Optional[str] = None
    ) -> None:
        """Append messages, creating the session on first use and trimming to the window"""
        pass

    @abstractmethod
    async def create(
        self,
        context: AgentContext,
        name: Optional[str] = None,
        session_id: Optional[str] = None,
        evict: bool = False,
        config: Optional[SessionConfig] = None,
        parent_session_id: Optional[str] = None
    ) -> Session:
        pass

    @abstractmethod
    async def list(self, context: AgentContext) -> List[ConversationInfo]:
        """Top-level sessions, most recently updated first"""
        pass

    @abstractmethod
    async def get(self, session_id: str, context: AgentContext) -> Optional[ConversationInfo]:
        pass

    @abstractmethod
    async def delete(self, session_id: str, context: AgentContext) -> None:
        pass

    @abstractmethod
    async def rename(self, session_id: str, name: str, context: AgentContext) -> None:
        pass

    @abstractmethod
    async def pin(self, session_id: str, pinned: bool, context: AgentContext) -> None:
        pass

    @abstractmethod
    async def count(self, context: AgentContext) -> int:
        """Number of top-level sessions counted against the cap"""
        pass

    @abstractmethod
    async def oldest_evictable(self, context: AgentContext) -> Optional[str]:
        """Least recently updated non-pinned top-level session"""
        pass

    @abstractmethod
    async def cleanup(self) -> int:
        """Drop expired sessions, returns how many were removed"""
        pass
