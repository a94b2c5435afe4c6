"""
Streaming Chat Relay
Runs one streaming generation per session and turns it into StreamEvents
"""
import asyncio
import json
import logging
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Union

import httpx

from powerbi_chat.decoders import StreamDecodeError
from powerbi_chat.events import ChatMessage, ChatProvider, StreamEvent
from powerbi_chat.providers import ProviderBackend, build_backends

logger = logging.getLogger(__name__)

CANCEL = "cancel"
DEFAULT_TIMEOUT = httpx.Timeout(120.0, connect=10.0)


class CancellationSignal(Exception):
    """The generation's control channel asked it to stop"""


class _Generation:
    """
    One in-flight generation

    The background task owns the transport; the control channel is raced
    against every await so a cancel takes effect at the next suspension point.
    """

    def __init__(self, session_id: str, provider: ChatProvider):
        self.session_id = session_id
        self.provider = provider
        self.control: asyncio.Queue = asyncio.Queue()
        self.events: asyncio.Queue = asyncio.Queue()
        self.task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()

    def cancel(self) -> bool:
        if not self.active:
            return False
        self.control.put_nowait(CANCEL)
        return True

    async def wait_finished(self):
        if self.task is not None:
            await asyncio.wait({self.task})

    async def race(self, awaitable):
        """
        Await work unless a control message arrives first

        Raises:
            CancellationSignal: if the control channel won; the work is cancelled
        """
        work = asyncio.ensure_future(awaitable)
        control = asyncio.ensure_future(self.control.get())
        try:
            done, _ = await asyncio.wait({work, control}, return_when=asyncio.FIRST_COMPLETED)
            if control in done:
                work.cancel()
                await asyncio.wait({work})
                if not work.cancelled() and work.exception() is not None:
                    logger.debug(f"Work finished with {work.exception()!r} while cancelling")
                raise CancellationSignal()
            return work.result()
        finally:
            for task in (work, control):
                if not task.done():
                    task.cancel()


class StreamingRelay:
    """
    Multi-provider streaming chat relay

    Usage:
        relay = StreamingRelay(KeyringSecretStore(), lambda: build_system_prompt(connection))
        async for event in relay.send("panel", "groq", "Explain CALCULATE", history):
            print(event.to_message())

        # From another task
        relay.cancel("panel")     # the stream above ends with done

    At most one generation runs per session: a new send cancels the active
    one and waits for it to end before starting.
    """

    def __init__(
        self,
        secrets,
        system_prompt_factory: Callable[[], str],
        client: Optional[httpx.AsyncClient] = None,
        backends: Optional[Dict[ChatProvider, ProviderBackend]] = None
    ):
        self.secrets = secrets
        self.system_prompt_factory = system_prompt_factory
        self._client = client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        self._owns_client = client is None
        self._backends = backends or build_backends()
        self._sessions: Dict[str, _Generation] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._starting: Dict[str, int] = {}

    def is_active(self, session_id: str) -> bool:
        generation = self._sessions.get(session_id)
        return generation is not None and generation.active

    def cancel(self, session_id: str) -> bool:
        """
        Ask the session's active generation to stop

        Returns:
            True if a generation was running; its stream ends with done
        """
        generation = self._sessions.get(session_id)
        if generation is None or not generation.cancel():
            return False
        logger.info(f"Cancel requested for chat session {session_id}")
        return True

    async def send(
        self,
        session_id: str,
        provider: Union[str, ChatProvider],
        text: str,
        history: Optional[Iterable[Union[ChatMessage, Dict[str, str]]]] = None
    ) -> AsyncIterator[StreamEvent]:
        """
        Start a generation and stream its events

        Yields chunk events followed by exactly one done or error event.
        """
        try:
            chosen = ChatProvider.parse(provider)
            messages = self._messages(history, text)
        except ValueError as e:
            yield StreamEvent.error(str(e))
            return

        generation = await self._start(session_id, chosen, messages)
        try:
            while True:
                event = await generation.events.get()
                yield event
                if event.is_terminal:
                    break
        finally:
            # Consumer went away early: stop the transport too
            if generation.cancel():
                await generation.wait_finished()
            if self._sessions.get(session_id) is generation:
                del self._sessions[session_id]

    async def aclose(self):
        """Cancel every active generation and close the HTTP client"""
        generations = list(self._sessions.values())
        for generation in generations:
            generation.cancel()
        for generation in generations:
            await generation.wait_finished()
        self._sessions.clear()
        if self._owns_client:
            await self._client.aclose()

    # ==================== INTERNALS ====================

    @staticmethod
    def _messages(history, text: str) -> List[ChatMessage]:
        messages = [m if isinstance(m, ChatMessage) else ChatMessage.from_dict(m) for m in (history or ())]
        messages.append(ChatMessage(role='user', content=text))
        return messages

    async def _start(self, session_id: str, provider: ChatProvider, messages: List[ChatMessage]) -> _Generation:
        # The lock lives only while some send is starting in this session
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._starting[session_id] = self._starting.get(session_id, 0) + 1
        try:
            async with lock:
                previous = self._sessions.get(session_id)
                if previous is not None and previous.active:
                    logger.info(f"Replacing active generation in chat session {session_id}")
                    previous.cancel()
                    await previous.wait_finished()

                generation = _Generation(session_id, provider)
                self._sessions[session_id] = generation
                generation.task = asyncio.ensure_future(self._generate(generation, messages))
                return generation
        finally:
            self._starting[session_id] -= 1
            if not self._starting[session_id]:
                del self._starting[session_id]
                del self._locks[session_id]

    async def _lookup_key(self, provider: ChatProvider) -> Optional[str]:
        return await asyncio.get_event_loop().run_in_executor(None, self.secrets.get, provider)

    async def _generate(self, generation: _Generation, messages: List[ChatMessage]):
        provider = generation.provider
        events = generation.events
        response: Optional[httpx.Response] = None

        try:
            backend = self._backends[provider]

            api_key = None
            if backend.requires_api_key:
                api_key = await generation.race(self._lookup_key(provider))
                if not api_key:
                    events.put_nowait(StreamEvent.error(
                        f"No API key configured for {provider.value}. Store one with chat:setApiKey "
                        f"or powerbi-chat --set-key {provider.value}."
                    ))
                    return

            request = backend.build_request(self._client, messages, self.system_prompt_factory(), api_key)
            logger.info(f"Starting {provider.value} generation for session {generation.session_id} (model: {backend.model})")
            response = await generation.race(self._client.send(request, stream=True))

            if response.status_code >= 400:
                body = await generation.race(response.aread())
                events.put_nowait(StreamEvent.error(
                    f"{provider.value} returned HTTP {response.status_code}: {_error_detail(body)}"
                ))
                return

            decoder = backend.decoder()
            chunks = response.aiter_bytes()
            while not decoder.finished:
                data = await generation.race(_next_chunk(chunks))
                if data is None:
                    break
                for text in decoder.feed(data):
                    events.put_nowait(StreamEvent.chunk(text))
                decoder.raise_for_error()
            for text in decoder.flush():
                events.put_nowait(StreamEvent.chunk(text))
            decoder.raise_for_error()

            events.put_nowait(StreamEvent.done())
            logger.info(f"{provider.value} generation finished for session {generation.session_id}")

        except CancellationSignal:
            logger.info(f"{provider.value} generation cancelled for session {generation.session_id}")
            events.put_nowait(StreamEvent.done())
        except (httpx.HTTPError, StreamDecodeError) as e:
            logger.error(f"{provider.value} stream failed: {e}")
            events.put_nowait(StreamEvent.error(f"{provider.value} stream failed: {e}"))
        except Exception as e:
            logger.exception(f"Unexpected error in {provider.value} generation")
            events.put_nowait(StreamEvent.error(f"Unexpected error: {e}"))
        finally:
            if response is not None:
                await response.aclose()


async def _next_chunk(chunks) -> Optional[bytes]:
    """Next body chunk, or None at end of stream"""
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


def _error_detail(body: bytes) -> str:
    """Best-effort message from an error response body"""
    text = body.decode('utf-8', errors='replace')
    try:
        data = json.loads(text)
    except ValueError:
        return text[:500] or "no details"
    if isinstance(data, list) and data:
        data = data[0]
    if isinstance(data, dict):
        error = data.get('error')
        if isinstance(error, dict) and error.get('message'):
            return error['message']
        if isinstance(error, str):
            return error
    return text[:500]
