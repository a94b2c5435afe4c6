"""
Chat message handler
Boundary between a chat front-end and the streaming relay
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from powerbi_chat.events import ChatProvider

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "default"

Post = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class ChatMessageHandler:
    """
    Routes inbound chat:* messages and posts outbound ones

    Inbound:
        chat:send {provider, text, history}, chat:cancel, chat:getConfig,
        chat:setApiKey {provider, key}, chat:deleteApiKey {provider}

    Outbound:
        chat:chunk {text}, chat:done, chat:error {message},
        chat:configLoaded {providers}, chat:apiKeySet {provider, success}

    A send runs in its own task so a cancel can arrive while it streams.
    """

    def __init__(self, relay, secrets, post: Post, session_id: str = DEFAULT_SESSION):
        self.relay = relay
        self.secrets = secrets
        self._post = post
        self.session_id = session_id
        self._stream_task: Optional[asyncio.Task] = None

    async def post(self, message: Dict[str, Any]):
        result = self._post(message)
        if asyncio.iscoroutine(result):
            await result

    async def handle(self, message: Dict[str, Any]) -> Optional[asyncio.Task]:
        """
        Handle one inbound message

        Returns:
            The streaming task for chat:send, None otherwise
        """
        kind = message.get('type')

        if kind == 'chat:send':
            self._stream_task = asyncio.ensure_future(self._stream(
                message.get('provider') or ChatProvider.OLLAMA.value,
                message.get('text') or '',
                message.get('history') or [],
            ))
            return self._stream_task

        if kind == 'chat:cancel':
            self.relay.cancel(self.session_id)
        elif kind == 'chat:getConfig':
            await self.post({'type': 'chat:configLoaded', 'providers': await self._provider_status()})
        elif kind == 'chat:setApiKey':
            await self._update_key(message, delete=False)
        elif kind == 'chat:deleteApiKey':
            await self._update_key(message, delete=True)
        else:
            logger.warning(f"Ignoring unknown chat message type: {kind}")
        return None

    async def wait_idle(self):
        """Wait for the last send to finish streaming"""
        if self._stream_task is not None:
            await asyncio.wait({self._stream_task})

    async def _stream(self, provider: str, text: str, history):
        async for event in self.relay.send(self.session_id, provider, text, history):
            outbound = event.to_message()
            outbound['type'] = f"chat:{outbound['type']}"
            await self.post(outbound)

    async def _provider_status(self) -> Dict[str, Dict[str, bool]]:
        keys = await asyncio.get_event_loop().run_in_executor(None, self.secrets.status)
        return {
            provider.value: {
                'requiresApiKey': provider is not ChatProvider.OLLAMA,
                'keySet': keys.get(provider.value, False),
            }
            for provider in ChatProvider
        }

    async def _update_key(self, message: Dict[str, Any], delete: bool):
        provider = message.get('provider')
        try:
            provider = ChatProvider.parse(provider).value
            if delete:
                await asyncio.get_event_loop().run_in_executor(None, self.secrets.delete, provider)
            else:
                if not message.get('key'):
                    raise ValueError("key is required")
                await asyncio.get_event_loop().run_in_executor(None, self.secrets.set, provider, message['key'])
        except (ValueError, RuntimeError) as e:
            await self.post({'type': 'chat:apiKeySet', 'provider': provider, 'success': False, 'message': str(e)})
            return
        await self.post({'type': 'chat:apiKeySet', 'provider': provider, 'success': True})
