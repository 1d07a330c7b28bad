"""Tests for provider resolution and response handling in the model client."""

import asyncio
from types import SimpleNamespace

import pytest

from skein.cancel import CancellationToken
from skein.llm import (
    LLMClient,
    ModelConfig,
    StreamChunk,
    ToolCallFragment,
    _litellm_target,
    _normalize_chunk,
    _until_cancelled,
    resolve_model_config,
)
from skein.report import AgentError, ConfigError


class TestResolveModelConfig:
    def test_lmstudio_defaults(self):
        cfg = resolve_model_config("lmstudio", "qwen3")
        assert cfg.base_url == "http://127.0.0.1:1234"
        assert cfg.api_key == "lm-studio"

    def test_unknown_provider(self):
        with pytest.raises(ConfigError, match="unknown provider"):
            resolve_model_config("anthropic", "x")

    def test_model_required(self):
        with pytest.raises(ConfigError, match="--model"):
            resolve_model_config("lmstudio", None)

    def test_xai_has_default_model(self, monkeypatch):
        monkeypatch.setenv("XAI_API_KEY", "xai-key")
        cfg = resolve_model_config("xai")
        assert cfg.model == "grok-3-latest"
        assert cfg.api_key == "xai-key"

    def test_openrouter_key_from_env(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-or")
        cfg = resolve_model_config("openrouter", "z-ai/glm-5")
        assert cfg.api_key == "sk-or"

    def test_explicit_key_wins(self, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "sk-env")
        cfg = resolve_model_config("openrouter", "m", api_key="sk-flag")
        assert cfg.api_key == "sk-flag"

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        with pytest.raises(ConfigError, match="OPENROUTER_API_KEY"):
            resolve_model_config("openrouter", "m")

    def test_generic_needs_base_url(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "k")
        with pytest.raises(ConfigError, match="--base-url"):
            resolve_model_config("generic", "m")

    def test_sampling_is_kept(self):
        cfg = resolve_model_config("lmstudio", "m", temperature=0.2, seed=7)
        assert cfg.temperature == 0.2
        assert cfg.seed == 7


class TestLitellmTarget:
    def test_lmstudio(self):
        model, kwargs = _litellm_target(
            ModelConfig("lmstudio", "qwen", "lm-studio", "http://localhost:1234/")
        )
        assert model == "openai/qwen"
        assert kwargs["api_base"] == "http://localhost:1234/v1"

    def test_openrouter_keeps_org(self):
        model, kwargs = _litellm_target(ModelConfig("openrouter", "openrouter/free", "k"))
        assert model == "openrouter/openrouter/free"
        assert "api_base" not in kwargs

    def test_openrouter_strips_doubled_prefix(self):
        model, _ = _litellm_target(ModelConfig("openrouter", "openrouter/openrouter/free", "k"))
        assert model == "openrouter/openrouter/free"

    def test_xai(self):
        model, _ = _litellm_target(ModelConfig("xai", "xai/grok-3", "k"))
        assert model == "xai/grok-3"

    def test_generic(self):
        model, kwargs = _litellm_target(ModelConfig("generic", "m", "k", "http://h/v1"))
        assert model == "openai/m"
        assert kwargs == {"api_key": "k", "api_base": "http://h/v1"}


class TestNormalizeChunk:
    def test_text(self):
        raw = SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="hi", tool_calls=None))])
        assert _normalize_chunk(raw) == StreamChunk(text="hi")

    def test_tool_fragment(self):
        tc = SimpleNamespace(
            index=1, id="call_9", function=SimpleNamespace(name="grep", arguments='{"p')
        )
        raw = SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None, tool_calls=[tc]))])
        chunk = _normalize_chunk(raw)
        assert chunk.tool_calls == [ToolCallFragment(1, "call_9", "grep", '{"p')]

    def test_empty_delta(self):
        raw = SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="", tool_calls=[]))])
        assert _normalize_chunk(raw) is None

    def test_no_choices(self):
        assert _normalize_chunk(SimpleNamespace(choices=[])) is None


class TestGenerateJson:
    def _client(self, monkeypatch, reply):
        client = LLMClient(ModelConfig("lmstudio", "m", "lm-studio", "http://x"))
        seen = {}

        async def fake_complete(messages, token=None, **extra):
            seen.update(extra)
            return reply

        monkeypatch.setattr(client, "complete", fake_complete)
        return client, seen

    def test_parses_object(self, monkeypatch):
        client, seen = self._client(monkeypatch, '{"next_speaker": "user"}')
        assert asyncio.run(client.generate_json([])) == {"next_speaker": "user"}
        assert seen["response_format"] == {"type": "json_object"}

    def test_strips_fences(self, monkeypatch):
        client, _ = self._client(monkeypatch, '```json\n{"a": 1}\n```')
        assert asyncio.run(client.generate_json([])) == {"a": 1}

    def test_invalid(self, monkeypatch):
        client, _ = self._client(monkeypatch, "not json")
        with pytest.raises(AgentError, match="invalid JSON"):
            asyncio.run(client.generate_json([]))

    def test_empty(self, monkeypatch):
        client, _ = self._client(monkeypatch, "  ")
        with pytest.raises(AgentError, match="empty"):
            asyncio.run(client.generate_json([]))

    def test_not_an_object(self, monkeypatch):
        client, _ = self._client(monkeypatch, "[1, 2]")
        with pytest.raises(AgentError, match="not an object"):
            asyncio.run(client.generate_json([]))


class TestUntilCancelled:
    def test_result_passes_through(self):
        async def value():
            return 42

        async def go():
            return await _until_cancelled(value(), CancellationToken())

        assert asyncio.run(go()) == 42

    def test_cancel_wins(self):
        async def forever():
            await asyncio.sleep(60)

        async def go():
            token = CancellationToken()
            asyncio.get_running_loop().call_later(0.01, token.cancel)
            await _until_cancelled(forever(), token)

        with pytest.raises(AgentError, match="cancelled"):
            asyncio.run(go())

    def test_already_cancelled(self):
        async def value():
            return 1

        async def go():
            token = CancellationToken()
            token.cancel()
            coro = value()
            try:
                await _until_cancelled(coro, token)
            finally:
                coro.close()

        with pytest.raises(AgentError):
            asyncio.run(go())


def _raw_text(text):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text, tool_calls=None))])


class FakeStream:
    """A litellm-style async stream that records whether it was closed."""

    def __init__(self, chunks, on_chunk=None):
        self.chunks = list(chunks)
        self.on_chunk = on_chunk
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.chunks:
            raise StopAsyncIteration
        chunk = self.chunks.pop(0)
        if self.on_chunk is not None:
            self.on_chunk(chunk)
        return chunk

    async def aclose(self):
        self.closed = True


def _lmstudio_client():
    return LLMClient(ModelConfig("lmstudio", "m", "lm-studio", "http://x"))


class TestComplete:
    def test_reply_text(self, monkeypatch):
        import litellm

        async def fake_acompletion(**kwargs):
            message = SimpleNamespace(content="summary text")
            return SimpleNamespace(choices=[SimpleNamespace(message=message)])

        monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
        assert asyncio.run(_lmstudio_client().complete([])) == "summary text"

    def test_no_choices_is_agent_error(self, monkeypatch):
        import litellm

        async def fake_acompletion(**kwargs):
            return SimpleNamespace(choices=[])

        monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
        with pytest.raises(AgentError, match="no choices"):
            asyncio.run(_lmstudio_client().complete([]))


class TestStreamCompletion:
    def _collect(self, token=None):
        async def go():
            return [c async for c in _lmstudio_client().stream_completion([], [], token)]

        return asyncio.run(go())

    def test_stream_closed_after_last_chunk(self, monkeypatch):
        import litellm

        stream = FakeStream([_raw_text("Hel"), _raw_text("lo")])

        async def fake_acompletion(**kwargs):
            return stream

        monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
        assert self._collect() == [StreamChunk(text="Hel"), StreamChunk(text="lo")]
        assert stream.closed

    def test_stream_closed_when_cancelled(self, monkeypatch):
        import litellm

        token = CancellationToken()
        stream = FakeStream(
            [_raw_text("a"), _raw_text("b"), _raw_text("c")],
            on_chunk=lambda chunk: token.cancel(),
        )

        async def fake_acompletion(**kwargs):
            return stream

        monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
        assert self._collect(token) == []
        assert stream.closed
        assert len(stream.chunks) == 2
