from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime


DEFAULT_MAX_MESSAGES = 50
DEFAULT_MAX_CONVERSATIONS = 50


class SessionConfig(BaseModel):
    """Per-call memory limits"""
    max_messages: int = Field(default=DEFAULT_MAX_MESSAGES, gt=0, description="Sliding window size")
    max_conversations: int = Field(default=DEFAULT_MAX_CONVERSATIONS, gt=0, description="Per-user session cap")
    ttl_hours: Optional[float] = Field(None, gt=0, description="Expiry for new sessions, None = never")
    auto_evict: bool = Field(default=True, description="Evict the oldest non-pinned session when the cap is hit")


class Session(BaseModel):
    """Stored conversation record"""
    session_id: str
    user_id: str
    team_id: str
    name: Optional[str] = None
    messages: List[Dict[str, Any]] = Field(default_factory=list, description="Serialized messages, oldest first")
    pinned: bool = False
    parent_session_id: Optional[str] = Field(None, description="Set for capability sub-sessions")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether the session is past its TTL"""
        if self.expires_at is None:
            return False
        return (now or datetime.utcnow()) >= self.expires_at


class ConversationInfo(BaseModel):
    """Listing view of a session"""
    session_id: str
    name: Optional[str] = None
    message_count: int = 0
    first_message: Optional[str] = None
    pinned: bool = False
    created_at: datetime
    updated_at: datetime
