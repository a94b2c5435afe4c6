"""
Incremental stream decoders
Turn provider-specific streaming framing into plain text deltas
"""
import json
import logging
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class StreamDecodeError(Exception):
    """The provider reported an error inside the stream"""


class StreamDecoder:
    """
    Line-framed decoder

    Bytes are buffered until a newline arrives, so lines (and multi-byte
    characters) split across reads are decoded whole. An error line stops
    decoding: the deltas before it are still returned and the message is
    kept in ``error`` for the caller to raise with ``raise_for_error()``.
    """

    def __init__(self):
        self._buffer = b""
        self.finished = False
        self.error: Optional[str] = None

    def feed(self, data: bytes) -> List[str]:
        """Consume raw bytes, returning the text deltas of every completed line"""
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        return self._decode_lines(lines)

    def flush(self) -> List[str]:
        """Decode whatever is left once the transport has ended"""
        remainder, self._buffer = self._buffer, b""
        return self._decode_lines([remainder]) if remainder.strip() else []

    def raise_for_error(self):
        """
        Raises:
            StreamDecodeError: if the provider reported an error in the stream
        """
        if self.error is not None:
            raise StreamDecodeError(self.error)

    def _decode_lines(self, lines: List[bytes]) -> List[str]:
        deltas = []
        for raw in lines:
            if self.finished:
                break
            line = raw.decode('utf-8', errors='replace').strip()
            if not line:
                continue
            try:
                text = self.decode_line(line)
            except StreamDecodeError as e:
                self.error = str(e)
                self.finished = True
                break
            if text:
                deltas.append(text)
        return deltas

    def decode_line(self, line: str) -> Optional[str]:
        raise NotImplementedError

    @staticmethod
    def _load(payload: str) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(payload)
        except ValueError:
            logger.debug(f"Skipping malformed stream line: {payload[:200]}")
            return None
        return data if isinstance(data, dict) else None

    @staticmethod
    def _check_error(data: Dict[str, Any]):
        error = data.get('error')
        if not error:
            return
        if isinstance(error, dict):
            error = error.get('message') or error.get('status') or json.dumps(error)
        raise StreamDecodeError(str(error))


class SSEDecoder(StreamDecoder):
    """Server-sent events: only data: lines carry payloads"""

    done_sentinel: Optional[str] = None

    def decode_line(self, line: str) -> Optional[str]:
        if not line.startswith('data:'):
            return None
        payload = line[5:].strip()
        if self.done_sentinel is not None and payload == self.done_sentinel:
            self.finished = True
            return None
        data = self._load(payload)
        if data is None:
            return None
        self._check_error(data)
        return self.extract(data)

    def extract(self, data: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError


class GeminiDecoder(SSEDecoder):
    """streamGenerateContent?alt=sse: text at candidates[0].content.parts[*].text"""

    def extract(self, data: Dict[str, Any]) -> Optional[str]:
        candidates = data.get('candidates') or []
        if not candidates:
            return None
        parts = (candidates[0].get('content') or {}).get('parts') or []
        return ''.join(part.get('text', '') for part in parts if isinstance(part, dict))


class OpenAIChatDecoder(SSEDecoder):
    """OpenAI-compatible chat completions (Groq): text at choices[0].delta.content"""

    done_sentinel = '[DONE]'

    def extract(self, data: Dict[str, Any]) -> Optional[str]:
        choices = data.get('choices') or []
        if not choices:
            return None
        return (choices[0].get('delta') or {}).get('content')


class OllamaDecoder(StreamDecoder):
    """Ollama /api/chat: one JSON object per line, text at message.content"""

    def decode_line(self, line: str) -> Optional[str]:
        data = self._load(line)
        if data is None:
            return None
        self._check_error(data)
        if data.get('done'):
            self.finished = True
        return (data.get('message') or {}).get('content')
