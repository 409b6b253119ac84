from typing import Any, Dict, List, Optional
import json
from pydantic import BaseModel, Field

from intent_graph.domain.capability.capability_registry import CapabilityRegistry
from intent_graph.domain.models.orchestration_state import GREETING, CLARIFICATION, IntentAction


class RoutedIntent(BaseModel):
    """One intent as reported by the model"""
    type: str = Field(description="Intent tag of a capability, or 'greeting'")
    action: IntentAction = Field(default=IntentAction.UNKNOWN, description="Operation to perform")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Extracted parameters")
    original_text: str = Field(default="", description="Portion of the user message that maps to this intent")


class RouterDecision(BaseModel):
    """Structured router output"""
    intents: List[RoutedIntent] = Field(
        default_factory=list,
        description="All intents in the message; several when the user asks for several things"
    )
    needs_clarification: bool = Field(default=False, description="True if the request is too vague")
    clarification_question: Optional[str] = Field(
        None, description="Question for the user in their language, null when not needed"
    )


def _example(intents: List[Dict[str, Any]]) -> str:
    return json.dumps({"intents": intents, "needs_clarification": False}, ensure_ascii=False)


def build_router_prompt(registry: CapabilityRegistry, extras: Optional[str] = None) -> str:
    """System prompt for intent classification, generated from the registry"""

    capabilities = registry.list()

    intent_lines = [f"- {c.intent_tag}: {c.description or c.name}" for c in capabilities]
    intent_lines.append(f"- {GREETING}: Greeting or small talk")
    intent_lines.append(f"- {CLARIFICATION}: Request is too vague to understand")

    slot_lines = [f"- {c.intent_tag}: {c.example_slots}" for c in capabilities if c.example_slots]

    type_union = " | ".join(f'"{tag}"' for tag in [c.intent_tag for c in capabilities] + [GREETING])
    action_union = " | ".join(f'"{action.value}"' for action in IntentAction)

    examples = []
    if capabilities:
        tag = capabilities[0].intent_tag
        text = f"Show me my {tag} items"
        examples.append(f'User: "{text}"\nResponse: ' + _example(
            [{"type": tag, "action": "list", "parameters": {}, "original_text": text}]
        ))
        text = f"Create {tag} 'Example' with high priority"
        examples.append(f'User: "{text}"\nResponse: ' + _example(
            [{"type": tag, "action": "create",
              "parameters": {"title": "Example", "priority": "high"}, "original_text": text}]
        ))
    if len(capabilities) >= 2:
        first, second = capabilities[0].intent_tag, capabilities[1].intent_tag
        text = f"Show my {first} items and find {second} data"
        examples.append(f'User: "{text}"\nResponse: ' + _example([
            {"type": first, "action": "list", "parameters": {}, "original_text": f"Show my {first} items"},
            {"type": second, "action": "search", "parameters": {"query": "data"},
             "original_text": f"find {second} data"},
        ]))
    examples.append('User: "Hola"\nResponse: ' + _example(
        [{"type": GREETING, "action": "unknown", "parameters": {}, "original_text": "Hola"}]
    ))

    sections = [
        "You are an intent classifier for a multi-agent system. "
        "Analyze the user message and extract ALL intents.",
        "IMPORTANT: Respond with valid JSON only. No additional text or explanation.",
        "## Intent Types\n" + "\n".join(intent_lines),
        "## Rules\n"
        "1. Extract ALL intents if the user asks for multiple things\n"
        "2. Be specific with parameters (title, priority, query, etc.)\n"
        "3. Ask clarification questions in the user's language\n"
        "4. Use clarification only when the request is truly unclear\n"
        "5. Map original_text to the relevant portion of the message",
    ]
    if slot_lines:
        sections.append("## Parameter Examples\n" + "\n".join(slot_lines))
    sections.append(
        "## JSON Output Format\n"
        "{\n"
        '  "intents": [\n'
        "    {\n"
        f'      "type": {type_union},\n'
        f'      "action": {action_union},\n'
        '      "parameters": {},\n'
        '      "original_text": "portion of user message"\n'
        "    }\n"
        "  ],\n"
        '  "needs_clarification": false,\n'
        '  "clarification_question": null\n'
        "}"
    )
    sections.append("## Examples\n" + "\n\n".join(examples))
    if extras:
        sections.append(extras)

    return "\n\n".join(sections)
