"""
Power BI chat relay: multi-provider streaming chat with cancellation
"""
from .events import ChatMessage, ChatProvider, StreamEvent, StreamEventType
from .relay import CancellationSignal, StreamingRelay
from .prompts import build_system_prompt
from .secrets import KeyringSecretStore
from .handler import ChatMessageHandler

__all__ = [
    'ChatMessage',
    'ChatProvider',
    'StreamEvent',
    'StreamEventType',
    'CancellationSignal',
    'StreamingRelay',
    'build_system_prompt',
    'KeyringSecretStore',
    'ChatMessageHandler',
]
