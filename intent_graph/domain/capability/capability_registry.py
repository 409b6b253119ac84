from typing import Dict, List, Any, Optional, Callable, Iterator, Mapping
import re
import structlog
from pydantic import BaseModel, ConfigDict, Field

from intent_graph.domain.errors import ConfigurationError
from intent_graph.domain.models.orchestration_state import Intent, RESERVED_TAGS

logger = structlog.get_logger(__name__)

_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")

# Handler signature: (read-only state view) -> HandlerResult | dict, sync or async
CapabilityHandler = Callable[[Mapping[str, Any]], Any]


class Capability(BaseModel):
    """A pluggable unit of domain logic bound to one intent"""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(description="Unique capability name, also the graph node prefix")
    intent_tag: str = Field(description="Tag the router emits for this capability")
    handler: CapabilityHandler
    description: str = Field(default="", description="Shown to the router and in greetings")
    example_slots: Optional[str] = Field(None, description="Slot examples for the router prompt")
    timeout_ms: Optional[int] = Field(None, gt=0, description="Optional per-handler sub-budget")

    @property
    def node_name(self) -> str:
        return f"{self.name}_handler"


class CapabilityRegistry:
    """Ordered registry of capabilities.

    Registration order is the dispatch order: when several intents match in
    one pass, handlers run in the order they were registered here.
    """

    def __init__(self):
        self._capabilities: Dict[str, Capability] = {}
        self._by_tag: Dict[str, str] = {}
        self._frozen = False

    def register(self, capability: Capability) -> Capability:
        """Register a capability; fails on duplicates and reserved tags"""

        if self._frozen:
            raise ConfigurationError(
                f"Cannot register '{capability.name}': registry is frozen by a compiled graph"
            )

        for value, field in ((capability.name, "name"), (capability.intent_tag, "intent_tag")):
            if not _NAME_PATTERN.match(value):
                raise ConfigurationError(f"Invalid capability {field}: {value!r}", {"field": field})
            if value.lower() in RESERVED_TAGS:
                raise ConfigurationError(
                    f"Capability {field} '{value}' collides with a reserved system tag",
                    {"field": field, "reserved": sorted(RESERVED_TAGS)}
                )

        if capability.name in self._capabilities or capability.name in self._by_tag:
            raise ConfigurationError(f"Capability name already registered: {capability.name}")
        if capability.intent_tag in self._by_tag or capability.intent_tag in self._capabilities:
            raise ConfigurationError(f"Intent tag already registered: {capability.intent_tag}")

        self._capabilities[capability.name] = capability
        self._by_tag[capability.intent_tag] = capability.name

        logger.info("Registered capability",
                    capability=capability.name,
                    intent_tag=capability.intent_tag,
                    position=len(self._capabilities))
        return capability

    def register_capability(
        self,
        name: str,
        intent_tag: str,
        handler: CapabilityHandler,
        description: str = "",
        example_slots: Optional[str] = None,
        timeout_ms: Optional[int] = None
    ) -> Capability:
        """Plugin-style registration, called once per capability at startup"""

        return self.register(Capability(
            name=name,
            intent_tag=intent_tag,
            handler=handler,
            description=description,
            example_slots=example_slots,
            timeout_ms=timeout_ms
        ))

    def list(self) -> List[Capability]:
        """All capabilities in registration order"""
        return [*self._capabilities.values()]

    def names(self) -> List[str]:
        return [*self._capabilities.keys()]

    def get(self, name: str) -> Optional[Capability]:
        return self._capabilities.get(name)

    def get_by_tag(self, intent_tag: str) -> Optional[Capability]:
        """Resolve the tag reported by the router to a capability"""
        name = self._by_tag.get(intent_tag)
        if name is None:
            # Models sometimes answer with the capability name instead of its tag
            name = intent_tag if intent_tag in self._capabilities else None
        return self._capabilities.get(name) if name else None

    def freeze(self) -> None:
        """Prevent further registration once a graph has been compiled"""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __len__(self) -> int:
        return len(self._capabilities)

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __iter__(self) -> Iterator[Capability]:
        return iter(self.list())


def intents_for(state: Mapping[str, Any], capability_name: str) -> List[Intent]:
    """Intents addressed to one capability, in router order"""
    return [intent for intent in state.get("intents", []) if intent.type == capability_name]
