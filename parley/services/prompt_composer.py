"""
Prompt composition for chat turns.

Message order sent to the model:
1. persona (system)
2. behavioral rails (system)
3. session memory (system, when non-empty)
4. retrieval context (system, when any hits)
5. user text
"""

from dataclasses import dataclass, field
from typing import List, Optional

from parley.core.config import settings
from parley.services.llm_client import ChatMessage

RAILS = " ".join(
    [
        "Be concise by default: 2-4 short sentences. If the user explicitly asks for more detail, add 1-2 extra sentences.",
        "Use provided CONTEXT when relevant and cite with [ctx:n] where n matches the numbering in the CONTEXT.",
        "Do not fabricate sources. Only use [ctx:n] for facts that come from the CONTEXT.",
        "If unsure or missing info, say so and ask at most one clarifying question.",
        "Respond in the user's language when possible.",
    ]
)


@dataclass
class Persona:
    name: str = "Taylor Rivera"
    role: str = "a panelist persona"
    traits: List[str] = field(default_factory=list)
    tone: str = ""

    @classmethod
    def from_settings(cls) -> "Persona":
        return cls(
            name=settings.PERSONA_NAME,
            role=settings.PERSONA_ROLE,
            traits=list(settings.PERSONA_TRAITS),
            tone=settings.PERSONA_TONE,
        )

    def render(self) -> str:
        parts = [f"You are {self.name}, {self.role}."]
        if self.traits:
            parts.append(f"Traits: {'; '.join(self.traits)}.")
        if self.tone:
            parts.append(f"Tone: {self.tone}")
        return " ".join(parts)


def compose_messages(
    user_text: str,
    persona: Persona,
    memory_block: str = "",
    context_block: str = "",
    rails: Optional[str] = None,
) -> List[ChatMessage]:
    messages: List[ChatMessage] = [
        {"role": "system", "content": persona.render()},
        {"role": "system", "content": rails or RAILS},
    ]
    if memory_block:
        messages.append({"role": "system", "content": memory_block})
    if context_block:
        messages.append({"role": "system", "content": f"CONTEXT:\n{context_block}"})
    messages.append({"role": "user", "content": user_text})
    return messages
