"""
Chat Relay Events
Provider-agnostic messages and stream events
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ChatProvider(Enum):
    """Chat backends; ollama runs locally and needs no API key"""
    OLLAMA = "ollama"
    GEMINI = "gemini"
    GROQ = "groq"

    @classmethod
    def parse(cls, value: Any) -> "ChatProvider":
        if isinstance(value, ChatProvider):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown chat provider: {value}. Expected one of: {', '.join(p.value for p in cls)}"
            ) from None


@dataclass(frozen=True)
class ChatMessage:
    """One turn of conversation history"""
    role: str
    content: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        role = data.get('role', 'user')
        if role not in ('user', 'assistant'):
            raise ValueError(f"Invalid message role: {role}")
        return cls(role=role, content=str(data.get('content', '')))

    def to_dict(self) -> Dict[str, str]:
        return {'role': self.role, 'content': self.content}


class StreamEventType(Enum):
    CHUNK = "chunk"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """
    One event of a generation stream

    A stream is zero or more chunk events closed by exactly one done or
    error event.
    """
    type: StreamEventType
    text: str = ""
    message: Optional[str] = None

    @classmethod
    def chunk(cls, text: str) -> "StreamEvent":
        return cls(StreamEventType.CHUNK, text=text)

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(StreamEventType.DONE)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(StreamEventType.ERROR, message=message)

    @property
    def is_terminal(self) -> bool:
        return self.type is not StreamEventType.CHUNK

    def to_message(self) -> Dict[str, Any]:
        if self.type is StreamEventType.CHUNK:
            return {'type': 'chunk', 'text': self.text}
        if self.type is StreamEventType.ERROR:
            return {'type': 'error', 'message': self.message}
        return {'type': 'done'}
