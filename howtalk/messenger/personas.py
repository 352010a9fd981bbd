from dataclasses import dataclass
from typing import Optional

from howtalk.core.errors import ValidationError
from .schemas import MessageType


@dataclass(frozen=True)
class AIPersona:
    id: str
    name: str
    description: str


AI_PERSONAS = {
    persona.id: persona
    for persona in (
        # Reply suggestion tones
        AIPersona("dating", "Dating", "Polite, friendly openers for a first meeting"),
        AIPersona("business", "Business", "Formal, courteous work conversation"),
        AIPersona("customer", "Customer service", "Helpful support desk replies"),
        # Chat partners
        AIPersona("assistant", "Assistant", "A helpful general purpose assistant"),
        AIPersona("creative", "Creative", "Imaginative and inspiring ideas"),
        AIPersona("professional", "Professional", "Business and work focused advice"),
        AIPersona("friend", "Friend", "A warm, casual conversation partner"),
        AIPersona("tutor", "Tutor", "Patient explanations for learning"),
        AIPersona("analyst", "Analyst", "Logical, data driven analysis"),
    )
}


def validate_message_type(
    message_type: str | MessageType, ai_persona: Optional[str] = None
) -> MessageType:
    """Resolve the message type tag; `ai` messages must name a known persona."""
    try:
        resolved = MessageType(message_type)
    except ValueError:
        raise ValidationError(f"Unsupported message type: {message_type}.")

    if resolved is MessageType.AI and ai_persona is None:
        raise ValidationError("AI messages need a persona.")

    if ai_persona is not None and ai_persona not in AI_PERSONAS:
        raise ValidationError(f"Unknown AI persona: {ai_persona}.")

    return resolved
