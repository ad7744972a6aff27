"""End-to-end tests for the chat pipeline with a fake LLM backend."""

import asyncio

import pytest

from contextforge.api.rate_limiter import RateLimitConfig, RateLimiter
from contextforge.config import AppConfig, ContextSettings
from contextforge.entities.models import Character, VoiceProfile, World
from contextforge.entities.store import EntityStore
from contextforge.llm.base import LLMBackend, LLMResponse
from contextforge.pipeline.chat import ChatPipeline


class FakeBackend(LLMBackend):
    def __init__(self, config, reply, errors):
        super().__init__(config)
        self.reply = reply
        self.errors = errors
        self.calls = []
        self.closed = False

    async def generate(
        self, messages, temperature=None, max_tokens=None, stop_sequences=None
    ):
        self.calls.append(messages)
        if self.errors:
            raise self.errors.pop(0)
        return LLMResponse(
            content=self.reply,
            model=self.config.model,
            input_tokens=100,
            output_tokens=20,
            finish_reason="end_turn",
        )

    async def health_check(self):
        return True

    async def aclose(self):
        self.closed = True


class RecordingFactory:
    """Stands in for ``LLMFactory.create`` and remembers what it built."""

    def __init__(self, reply="Elara smiles. Elara has green eyes.", errors=None):
        self.reply = reply
        self.errors = list(errors or [])
        self.configs = []
        self.backends = []

    def __call__(self, config):
        self.configs.append(config)
        backend = FakeBackend(config, self.reply, self.errors)
        self.backends.append(backend)
        return backend

    @property
    def sent_messages(self):
        return self.backends[-1].calls[-1]


def _store():
    store = EntityStore()
    store.add(Character(
        id="#ELARA_902",
        name="Elara",
        role="protagonist",
        core_concept="A disgraced knight seeking redemption",
        motivations=[f"motive-{i}" for i in range(1, 7)],
        voice_profile=VoiceProfile(sample_dialogue=["Stand fast."]),
    ))
    store.add(World(id="@VIRELITH_501", name="Virelith", tone="grim"))
    return store


def _body(content="Hello there", **overrides):
    body = {
        "messages": [{"role": "user", "content": content}],
        "apiKey": "sk-test",
    }
    body.update(overrides)
    return body


class TestChatPipeline:
    def setup_method(self):
        self.store = _store()
        self.factory = RecordingFactory()
        self.limiter = RateLimiter()
        self.pipeline = ChatPipeline(
            self.store, self.limiter, backend_factory=self.factory
        )

    @pytest.mark.asyncio
    async def test_happy_path(self):
        outcome = await self.pipeline.handle(
            _body(
                "How are you feeling?",
                pinnedEntityIds=["#ELARA_902"],
                mode="chat_with",
            ),
            identifier="user-1",
        )

        assert outcome.ok
        assert outcome.text.startswith("[@Elara](character:#ELARA_902) smiles.")
        assert [r.id for r in outcome.entity_references] == ["#ELARA_902"]
        assert outcome.detected_facts[0].fact == "has green eyes"
        assert outcome.rate_limit.remaining == 19
        assert outcome.debug is None

        config = self.factory.configs[0]
        assert config.api_key == "sk-test"
        assert config.provider == "anthropic"

        system, user = self.factory.sent_messages
        assert system["role"] == "system"
        assert "Current mode: **chat_with**" in system["content"]
        assert "### 👤 CHARACTER: Elara (#ELARA_902)" in system["content"]
        assert "motive-5" in system["content"]
        assert "motive-6" not in system["content"]
        assert user == {"role": "user", "content": "How are you feeling?"}
        assert "entity-context" in outcome.composed.included_sections

    @pytest.mark.asyncio
    async def test_validation_error(self):
        outcome = await self.pipeline.handle({"messages": []})
        assert outcome.status == 400
        assert outcome.error.error == "Messages array must not be empty"
        assert self.factory.configs == []

    @pytest.mark.asyncio
    async def test_oversized_request(self):
        outcome = await self.pipeline.handle(_body("x" * (2 * 1024 * 1024)))
        assert outcome.status == 413
        assert "exceeds maximum allowed size" in outcome.error.error

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        pipeline = ChatPipeline(
            self.store,
            RateLimiter(RateLimitConfig(max_tokens=1, refill_rate=1 / 60)),
            backend_factory=self.factory,
        )
        assert (await pipeline.handle(_body(), identifier="ip-1")).ok
        outcome = await pipeline.handle(_body(), identifier="ip-1")
        assert outcome.status == 429
        assert outcome.error.code == "RATE_LIMIT_EXCEEDED"
        assert outcome.error.retry_after >= 1
        assert "retryAfter" in outcome.error.to_dict()
        assert len(self.factory.configs) == 1

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        outcome = await self.pipeline.handle(
            {"messages": [{"role": "user", "content": "Hi"}]}
        )
        assert outcome.status == 400
        assert outcome.error.error == (
            "API key is required. Please add your Anthropic API key in Settings."
        )

    @pytest.mark.asyncio
    async def test_rejected_request_leaves_store_untouched(self):
        outcome = await self.pipeline.handle(
            {"messages": [{"role": "user", "content": "Tell me about @Kira"}]}
        )
        assert outcome.status == 400
        assert outcome.created_stub_ids == []
        assert [c.name for c in self.store.characters] == ["Elara"]
        assert self.store.development_queue == []

    @pytest.mark.asyncio
    async def test_backend_reused_per_provider_and_key(self):
        assert (await self.pipeline.handle(_body("one"))).ok
        assert (await self.pipeline.handle(_body("two"))).ok
        assert len(self.factory.configs) == 1
        assert len(self.factory.backends[0].calls) == 2

        assert (await self.pipeline.handle(_body("three", apiKey="sk-other"))).ok
        assert [c.api_key for c in self.factory.configs] == ["sk-test", "sk-other"]

        await self.pipeline.aclose()
        assert all(backend.closed for backend in self.factory.backends)

    @pytest.mark.asyncio
    async def test_admin_mode_without_server_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        outcome = await self.pipeline.handle({
            "messages": [{"role": "user", "content": "Hi"}],
            "provider": "openai",
            "isAdminMode": True,
        })
        assert outcome.status == 400
        assert outcome.error.error == (
            "Admin mode is active but OPENAI_API_KEY is not configured."
        )

    @pytest.mark.asyncio
    async def test_admin_mode_uses_server_key(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-server")
        outcome = await self.pipeline.handle(_body(isAdminMode=True))
        assert outcome.ok
        assert self.factory.configs[0].api_key == "sk-server"
        assert outcome.debug["provider"] == "anthropic"
        assert outcome.debug["usage"] == {"input_tokens": 100, "output_tokens": 20}
        assert "total_tokens" in outcome.debug["context"]

    @pytest.mark.asyncio
    async def test_plain_mention_resolves_by_name(self):
        outcome = await self.pipeline.handle(_body("@Elara what do you think?"))
        assert outcome.assembled.entities_included["characters"] == ["Elara"]
        assert outcome.created_stub_ids == []

    @pytest.mark.asyncio
    async def test_unknown_plain_mention_creates_stub(self):
        outcome = await self.pipeline.handle(_body("Introduce @Mira to the party"))
        assert len(outcome.created_stub_ids) == 1
        stub = self.store.get_character(outcome.created_stub_ids[0])
        assert stub.name == "Mira"
        assert stub.tags == ["stub", "needs-development"]
        assert [i.entity_id for i in self.store.development_queue] == [stub.id]
        assert outcome.assembled.entities_included["characters"] == ["Mira"]

    @pytest.mark.asyncio
    async def test_stub_creation_disabled(self):
        pipeline = ChatPipeline(
            self.store,
            self.limiter,
            backend_factory=self.factory,
            config=AppConfig(context=ContextSettings(create_stubs=False)),
        )
        outcome = await pipeline.handle(_body("Introduce @Mira to the party"))
        assert outcome.created_stub_ids == []
        assert len(self.store.characters) == 1

    @pytest.mark.asyncio
    async def test_markdown_mention_in_message(self):
        outcome = await self.pipeline.handle(
            _body("Describe [@Virelith](world:@VIRELITH_501) at night")
        )
        assert outcome.assembled.entities_included["worlds"] == ["Virelith"]

    @pytest.mark.asyncio
    async def test_missing_entity_ids(self, caplog):
        outcome = await self.pipeline.handle(
            _body(pinnedEntityIds=["#GONE_1"], mentionedEntityIds=["#ELARA_902"])
        )
        assert outcome.ok
        assert outcome.missing_entity_ids == ["#GONE_1"]
        assert "#GONE_1" in caplog.text

    @pytest.mark.asyncio
    async def test_inline_linked_entities(self):
        outcome = await self.pipeline.handle(_body(
            linkedCharacter={
                "id": "#TEMP_1",
                "name": "Temp",
                "coreConcept": "A wandering bard",
            },
            linkedWorld="@VIRELITH_501",
            linkedProject={"id": "$BROKEN_1"},
        ))
        assert outcome.ok
        assert outcome.assembled.entities_included == {
            "characters": ["Temp"],
            "worlds": ["Virelith"],
            "projects": [],
        }
        assert "A wandering bard" in self.factory.sent_messages[0]["content"]

    @pytest.mark.asyncio
    async def test_provider_error(self):
        factory = RecordingFactory(errors=[RuntimeError("401 Unauthorized")])
        pipeline = ChatPipeline(self.store, self.limiter, backend_factory=factory)
        outcome = await pipeline.handle(_body())
        assert outcome.status == 401
        assert outcome.error.code == "INVALID_API_KEY"
        assert outcome.error.invalid_key == "anthropicKey"
        assert len(factory.backends[0].calls) == 1

    @pytest.mark.asyncio
    async def test_transient_error_retried(self, monkeypatch):
        monkeypatch.setattr(
            "contextforge.utils.retry.calculate_retry_delay", lambda attempt: 0
        )
        factory = RecordingFactory(
            reply="Recovered.", errors=[RuntimeError("503 Service Unavailable")]
        )
        pipeline = ChatPipeline(self.store, self.limiter, backend_factory=factory)
        outcome = await pipeline.handle(_body())
        assert outcome.ok
        assert outcome.text == "Recovered."
        assert len(factory.backends[0].calls) == 2

    @pytest.mark.asyncio
    async def test_transient_error_exhausted(self):
        factory = RecordingFactory(errors=[RuntimeError("503 Service Unavailable")])
        pipeline = ChatPipeline(
            self.store,
            self.limiter,
            backend_factory=factory,
            config=AppConfig(context=ContextSettings(max_attempts=1)),
        )
        outcome = await pipeline.handle(_body())
        assert outcome.status == 503
        assert outcome.error.code == "SERVICE_UNAVAILABLE"
        assert outcome.composed is not None

    @pytest.mark.asyncio
    async def test_history_window(self):
        pipeline = ChatPipeline(
            self.store,
            self.limiter,
            backend_factory=self.factory,
            config=AppConfig(context=ContextSettings(history_window=2)),
        )
        outcome = await pipeline.handle(_body(messages=[
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "second"},
            {"role": "user", "content": "third"},
            {"role": "assistant", "content": "fourth"},
            {"role": "user", "content": "fifth"},
        ]))
        assert outcome.ok
        sent = self.factory.sent_messages
        assert [m["content"] for m in sent[1:]] == ["fourth", "fifth"]
        assert "### EARLIER CONVERSATION\nUSER: first\n\nASSISTANT: second" in (
            sent[0]["content"]
        )

    @pytest.mark.asyncio
    async def test_links_disabled(self):
        pipeline = ChatPipeline(
            self.store,
            self.limiter,
            backend_factory=self.factory,
            config=AppConfig(context=ContextSettings(enrich_links=False)),
        )
        outcome = await pipeline.handle(_body())
        assert outcome.text == "Elara smiles. Elara has green eyes."
        assert outcome.entity_references[0].id == "#ELARA_902"

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self):
        config = AppConfig(providers={
            "anthropic": {"provider": "anthropic", "model": "claude-3-5-haiku-20241022"},
        })
        pipeline = ChatPipeline(
            self.store, self.limiter, backend_factory=self.factory, config=config
        )
        outcome = await pipeline.handle(_body(provider="openai"))
        assert outcome.status == 400
        assert outcome.error.error == "Provider openai is not configured."
        assert self.factory.configs == []

    @pytest.mark.asyncio
    async def test_custom_system_template(self, tmp_path):
        (tmp_path / "system.jinja2").write_text("Custom prompt for {{ mode }}.")
        pipeline = ChatPipeline(
            self.store,
            self.limiter,
            backend_factory=self.factory,
            prompt_dir=tmp_path,
        )
        await pipeline.handle(_body(modeInstruction="Stay in character."))
        content = self.factory.sent_messages[0]["content"]
        assert content.startswith("Custom prompt for chat.")
        assert "### MODE INSTRUCTIONS\nStay in character." in content


@pytest.mark.asyncio
async def test_cleanup_task_lifecycle():
    pipeline = ChatPipeline(EntityStore(), RateLimiter())
    task = pipeline.start_cleanup()
    assert pipeline.start_cleanup() is task
    await pipeline.aclose()
    assert task.cancelled()
    await asyncio.sleep(0)
