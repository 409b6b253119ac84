from abc import ABC, abstractmethod
from typing import Dict, Any, List, Mapping, Sequence
from datetime import datetime
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from intent_graph.domain.capability.capability_registry import intents_for
from intent_graph.domain.context.history import current_turn
from intent_graph.domain.context.memory.session_store import SessionStore, derive_sub_session_id
from intent_graph.domain.models.orchestration_state import AgentContext, HandlerResult, Intent, IntentAction


class ConversationalSubAgent(ABC):
    """Base class for capabilities backed by their own conversational agent.

    Each sub-agent keeps a sub-session ``{session_id}-{name}`` under the
    caller's session, so it sees its own earlier turns but only reads the
    output of the current one.
    """

    def __init__(self, name: str, description: str, session_store: SessionStore):
        self.name = name
        self.description = description
        self.session_store = session_store
        self.created_at = datetime.utcnow()
        self.last_active = datetime.utcnow()

    @abstractmethod
    async def process(self, conversation: List[BaseMessage], intents: List[Intent],
                      context: AgentContext) -> Sequence[BaseMessage]:
        """Run the agent over the sub-session and return the messages it produced"""
        pass

    def turn_message(self, state: Mapping[str, Any], intents: List[Intent]) -> str:
        """Text handed to the sub-agent: its own slice of the request, or the whole input"""
        texts = [intent.original_text for intent in intents if intent.original_text]
        return " ".join(texts) if texts else state["input"]

    def build_result(self, turn: List[BaseMessage], intents: List[Intent]) -> HandlerResult:
        """Turn the messages of the current turn into a HandlerResult"""
        replies = [m.content for m in turn if isinstance(m, AIMessage) and m.content]
        action = intents[0].action if intents else IntentAction.UNKNOWN
        return HandlerResult(
            success=bool(replies),
            operation=action.value,
            data=replies,
            count=len(replies),
            message=replies[-1] if replies else None,
            error=None if replies else f"{self.name} produced no reply"
        )

    async def handle(self, state: Mapping[str, Any]) -> HandlerResult:
        context: AgentContext = state["context"]
        parent_session_id = state["session_id"]
        session_id = derive_sub_session_id(parent_session_id, self.name)
        intents = intents_for(state, self.name)

        self.update_activity()
        history = await self.session_store.load(session_id, context)
        human = HumanMessage(content=self.turn_message(state, intents))
        produced = list(await self.process([*history, human], intents, context))

        result = self.build_result(current_turn([*history, human, *produced]), intents)
        await self.session_store.append(
            session_id, [human, *produced], context, parent_session_id=parent_session_id
        )
        return result

    def as_handler(self):
        """Capability handler bound to this sub-agent"""
        return self.handle

    def update_activity(self):
        """Update last activity timestamp"""
        self.last_active = datetime.utcnow()

    def get_info(self) -> Dict[str, Any]:
        """Get agent information"""
        return {
            "name": self.name,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat()
        }
