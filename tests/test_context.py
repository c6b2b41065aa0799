import pytest

from llmrelay.context import (
    ModelConfig, ProviderConfig, RequestContext, StaticChatContext, context_from_env, load_provider_config,
)


class TestProviderConfig:

    def test_load_from_environment(self, mock_env):
        config = load_provider_config("openai")
        assert config.api_key == "sk-test-openai"
        assert config.api_base == "https://api.openai.com/v1"

    def test_dotenv_file_wins(self, mock_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("OPENAI_API_KEY=sk-from-file\nOPENAI_API_BASE=http://proxy.local/v1\n")

        config = load_provider_config("openai", env_file=str(env_file))

        assert config.api_key == "sk-from-file"
        assert config.api_base == "http://proxy.local/v1"

    def test_ollama_needs_no_key(self, mock_env):
        config = load_provider_config("ollama")
        assert config.api_key == ""
        assert config.api_base == "http://localhost:11434"

    def test_unknown_provider(self, mock_env):
        with pytest.raises(ValueError, match="Unknown provider"):
            load_provider_config("gemini")


class TestRequestContext:

    def test_snapshot_is_independent_of_later_changes(self, make_context):
        ctx = make_context(temperature=0.3, history=[{"id": "1", "prompt": "a", "reply": "b"}])
        snapshot = RequestContext.from_chat_context(ctx)

        ctx.temperature = 0.9
        ctx.history.append({"id": "2", "prompt": "c", "reply": "d"})

        assert snapshot.temperature == 0.3
        assert len(snapshot.history) == 1

    def test_history_before_regenerated_turn(self, make_context):
        turns = [{"id": str(i), "prompt": f"p{i}", "reply": f"r{i}"} for i in range(3)]
        ctx = make_context(history=turns)

        snapshot = RequestContext.from_chat_context(ctx, msg_id="2")

        assert [turn["id"] for turn in snapshot.history] == ["0", "1"]

    @pytest.mark.parametrize("enabled, capabilities, expected", [
        (True, {"tools": True}, True),
        (True, {}, False),
        (False, {"tools": True}, False),
    ])
    def test_tools_available(self, make_context, enabled, capabilities, expected):
        ctx = make_context(capabilities=capabilities, tools_enabled=enabled)
        assert RequestContext.from_chat_context(ctx).tools_available is expected

    def test_context_from_env(self, mock_env):
        ctx = context_from_env("anthropic", "claude-test", {"vision": True}, system_message="be brief")
        assert isinstance(ctx, StaticChatContext)
        assert ctx.get_provider() == ProviderConfig("anthropic", "https://api.anthropic.com/v1", "sk-test-anthropic")
        assert ctx.get_model() == ModelConfig("claude-test", {"vision": True})
        assert ctx.get_system_message() == "be brief"
