"""
Chat provider backends
Each backend knows how to build its streaming request and which decoder reads the reply
"""
import logging
import os
from typing import Dict, List, Optional, Sequence

import httpx

from powerbi_chat.decoders import GeminiDecoder, OllamaDecoder, OpenAIChatDecoder, StreamDecoder
from powerbi_chat.events import ChatMessage, ChatProvider

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_TOKENS = 2048


def _max_output_tokens() -> int:
    value = os.getenv('CHAT_MAX_OUTPUT_TOKENS')
    try:
        return int(value) if value else DEFAULT_MAX_OUTPUT_TOKENS
    except ValueError:
        logger.warning(f"Ignoring invalid CHAT_MAX_OUTPUT_TOKENS: {value}")
        return DEFAULT_MAX_OUTPUT_TOKENS


class ProviderBackend:
    """Base class for one chat provider"""

    provider: ChatProvider = ChatProvider.OLLAMA
    requires_api_key = True
    default_model = ""
    model_env = ""

    def __init__(self, model: Optional[str] = None, max_output_tokens: Optional[int] = None):
        self.model = model or os.getenv(self.model_env) or self.default_model
        self.max_output_tokens = max_output_tokens or _max_output_tokens()

    def build_request(
        self,
        client: httpx.AsyncClient,
        history: Sequence[ChatMessage],
        system_prompt: str,
        api_key: Optional[str] = None
    ) -> httpx.Request:
        """Request carrying the system preamble and the full history, newest message last"""
        raise NotImplementedError

    def decoder(self) -> StreamDecoder:
        raise NotImplementedError

    @staticmethod
    def _chat_messages(history: Sequence[ChatMessage], system_prompt: str) -> List[Dict[str, str]]:
        return [{'role': 'system', 'content': system_prompt}] + [m.to_dict() for m in history]


class OllamaBackend(ProviderBackend):
    """Local Ollama server, no API key"""

    provider = ChatProvider.OLLAMA
    requires_api_key = False
    default_model = "llama3.1"
    model_env = "OLLAMA_MODEL"

    def __init__(self, model: Optional[str] = None, max_output_tokens: Optional[int] = None, host: Optional[str] = None):
        super().__init__(model, max_output_tokens)
        self.host = (host or os.getenv('OLLAMA_HOST') or "http://localhost:11434").rstrip('/')

    def build_request(self, client, history, system_prompt, api_key=None):
        return client.build_request(
            "POST",
            f"{self.host}/api/chat",
            json={
                'model': self.model,
                'messages': self._chat_messages(history, system_prompt),
                'stream': True,
                'options': {'num_predict': self.max_output_tokens},
            },
        )

    def decoder(self):
        return OllamaDecoder()


class GeminiBackend(ProviderBackend):
    """Google Gemini streamGenerateContent over SSE"""

    provider = ChatProvider.GEMINI
    default_model = "gemini-2.0-flash"
    model_env = "GEMINI_MODEL"
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"

    def build_request(self, client, history, system_prompt, api_key=None):
        contents = [
            {'role': 'user' if m.role == 'user' else 'model', 'parts': [{'text': m.content}]}
            for m in history
        ]
        return client.build_request(
            "POST",
            f"{self.BASE_URL}/{self.model}:streamGenerateContent",
            params={'alt': 'sse', 'key': api_key or ''},
            json={
                'system_instruction': {'parts': [{'text': system_prompt}]},
                'contents': contents,
                'generationConfig': {'maxOutputTokens': self.max_output_tokens},
            },
        )

    def decoder(self):
        return GeminiDecoder()


class GroqBackend(ProviderBackend):
    """Groq OpenAI-compatible chat completions"""

    provider = ChatProvider.GROQ
    default_model = "llama-3.3-70b-versatile"
    model_env = "GROQ_MODEL"
    URL = "https://api.groq.com/openai/v1/chat/completions"

    def build_request(self, client, history, system_prompt, api_key=None):
        return client.build_request(
            "POST",
            self.URL,
            headers={'Authorization': f"Bearer {api_key or ''}"},
            json={
                'model': self.model,
                'messages': self._chat_messages(history, system_prompt),
                'stream': True,
                'max_tokens': self.max_output_tokens,
            },
        )

    def decoder(self):
        return OpenAIChatDecoder()


BACKENDS = {
    ChatProvider.OLLAMA: OllamaBackend,
    ChatProvider.GEMINI: GeminiBackend,
    ChatProvider.GROQ: GroqBackend,
}


def build_backends() -> Dict[ChatProvider, ProviderBackend]:
    """One backend per provider, configured from the environment"""
    return {provider: backend_cls() for provider, backend_cls in BACKENDS.items()}
