"""Test stream decoders and provider request building"""
import json

import httpx
import pytest

from powerbi_chat.decoders import GeminiDecoder, OllamaDecoder, OpenAIChatDecoder, StreamDecodeError
from powerbi_chat.events import ChatMessage, ChatProvider, StreamEvent
from powerbi_chat.providers import GeminiBackend, GroqBackend, OllamaBackend, build_backends


def sse(payload):
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def groq_delta(text):
    return sse({"choices": [{"delta": {"content": text}}]})


def gemini_part(text):
    return sse({"candidates": [{"content": {"parts": [{"text": text}], "role": "model"}}]})


def test_openai_deltas_and_done_sentinel():
    decoder = OpenAIChatDecoder()
    data = groq_delta("Hel") + groq_delta("lo") + b"data: [DONE]\n\n" + groq_delta("ignored")

    assert decoder.feed(data) == ["Hel", "lo"]
    assert decoder.finished


def test_lines_split_across_reads():
    decoder = OpenAIChatDecoder()
    data = groq_delta("Olá, mundo")
    cut = data.index("á".encode("utf-8")) + 1  # inside the multi-byte character

    assert decoder.feed(data[:cut]) == []
    assert decoder.feed(data[cut:]) == ["Olá, mundo"]


def test_role_only_and_comment_lines_are_skipped():
    decoder = OpenAIChatDecoder()
    data = b": keep-alive\n" + sse({"choices": [{"delta": {"role": "assistant"}}]}) + groq_delta("x")
    assert decoder.feed(data) == ["x"]


def test_malformed_json_is_skipped():
    decoder = OpenAIChatDecoder()
    assert decoder.feed(b"data: {not json\n" + groq_delta("ok")) == ["ok"]


def test_gemini_joins_parts():
    decoder = GeminiDecoder()
    payload = sse({"candidates": [{"content": {"parts": [{"text": "EVALUATE "}, {"text": "Sales"}]}}]})
    assert decoder.feed(gemini_part("A") + payload) == ["A", "EVALUATE Sales"]
    assert not decoder.finished


def test_gemini_error_in_stream():
    decoder = GeminiDecoder()
    assert decoder.feed(sse({"error": {"code": 429, "message": "quota exceeded"}})) == []
    assert decoder.finished
    with pytest.raises(StreamDecodeError, match="quota"):
        decoder.raise_for_error()


def test_deltas_before_error_line_are_kept():
    decoder = OpenAIChatDecoder()
    data = groq_delta("par") + groq_delta("tial") + sse({"error": {"message": "rate limit reached"}}) + groq_delta("lost")

    assert decoder.feed(data) == ["par", "tial"]
    assert decoder.error == "rate limit reached"
    assert decoder.feed(groq_delta("later")) == []


def test_ollama_ndjson():
    decoder = OllamaDecoder()
    data = (
        json.dumps({"message": {"role": "assistant", "content": "Hi"}, "done": False}) + "\n"
        + json.dumps({"message": {"role": "assistant", "content": " there"}, "done": False}) + "\n"
        + json.dumps({"message": {"role": "assistant", "content": ""}, "done": True})
    ).encode("utf-8")

    assert decoder.feed(data) == ["Hi", " there"]
    assert not decoder.finished
    assert decoder.flush() == []
    assert decoder.finished


def test_ollama_error_line():
    decoder = OllamaDecoder()
    data = b'{"message": {"content": "Hi"}, "done": false}\n{"error": "model \'nope\' not found"}\n'
    assert decoder.feed(data) == ["Hi"]
    with pytest.raises(StreamDecodeError, match="model 'nope' not found"):
        decoder.raise_for_error()


def test_stream_events():
    assert StreamEvent.chunk("a").to_message() == {"type": "chunk", "text": "a"}
    assert StreamEvent.done().to_message() == {"type": "done"}
    assert StreamEvent.error("x").to_message() == {"type": "error", "message": "x"}
    assert StreamEvent.done().is_terminal and StreamEvent.error("x").is_terminal
    assert not StreamEvent.chunk("a").is_terminal


def test_provider_parsing_and_roles():
    assert ChatProvider.parse(" Groq ") is ChatProvider.GROQ
    with pytest.raises(ValueError, match="Unknown chat provider"):
        ChatProvider.parse("copilot")
    with pytest.raises(ValueError, match="Invalid message role"):
        ChatMessage.from_dict({"role": "system", "content": "x"})


# ==================== REQUESTS ====================

HISTORY = [ChatMessage("user", "What is DAX?"), ChatMessage("assistant", "A formula language."), ChatMessage("user", "Show me one")]


def test_groq_request():
    client = httpx.AsyncClient()
    request = GroqBackend(model="llama-test", max_output_tokens=64).build_request(client, HISTORY, "You help with Power BI", "gsk_123")
    body = json.loads(request.content)

    assert request.headers["Authorization"] == "Bearer gsk_123"
    assert body["messages"][0] == {"role": "system", "content": "You help with Power BI"}
    assert body["messages"][-1] == {"role": "user", "content": "Show me one"}
    assert body["stream"] is True
    assert body["max_tokens"] == 64


def test_gemini_request():
    client = httpx.AsyncClient()
    request = GeminiBackend(model="gemini-test").build_request(client, HISTORY, "sys", "AIza")
    body = json.loads(request.content)

    assert request.url.path.endswith("/gemini-test:streamGenerateContent")
    assert request.url.params["alt"] == "sse"
    assert request.url.params["key"] == "AIza"
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    assert body["system_instruction"]["parts"][0]["text"] == "sys"


def test_ollama_request(monkeypatch):
    monkeypatch.setenv("OLLAMA_HOST", "http://gpu-box:11434/")
    monkeypatch.setenv("OLLAMA_MODEL", "qwen2.5")
    backend = OllamaBackend()
    request = backend.build_request(httpx.AsyncClient(), HISTORY, "sys")
    body = json.loads(request.content)

    assert not backend.requires_api_key
    assert str(request.url) == "http://gpu-box:11434/api/chat"
    assert body["model"] == "qwen2.5"


def test_max_output_tokens_from_env(monkeypatch):
    monkeypatch.setenv("CHAT_MAX_OUTPUT_TOKENS", "512")
    backends = build_backends()
    assert set(backends) == set(ChatProvider)
    assert all(backend.max_output_tokens == 512 for backend in backends.values())

    monkeypatch.setenv("CHAT_MAX_OUTPUT_TOKENS", "lots")
    assert GroqBackend().max_output_tokens == 2048
