import pytest

from toolweave.llms.models import merge_model_settings, reasoning_settings, split_model_id
from toolweave.router.api.params import GetModelsResponse, GetToolsResponse


def test_get_models(client):
    response = client.get("/api/config/models")
    assert response.status_code == 200
    models = GetModelsResponse.model_validate(response.json())
    assert "anthropic" in models.providers
    assert set(models.models) <= set(models.providers)


def test_get_tools(client):
    response = client.get("/api/config/tools")
    assert response.status_code == 200
    tools = {tool.name: tool for tool in GetToolsResponse.model_validate(response.json()).tools}

    assert tools["mock-echo_text"].description == "Echo the input text"
    assert not tools["mock-delete_records"].needs_approval
    assert tools["guarded-delete_records"].needs_approval
    assert not any(name.startswith("disabled-mock") for name in tools)


@pytest.mark.parametrize(
    "model_id, expected",
    [
        ("anthropic:claude-sonnet-4-5", ("anthropic", "claude-sonnet-4-5")),
        ("openai/gpt-4o", ("openai", "gpt-4o")),
        ("gpt-4o", (None, "gpt-4o")),
    ],
)
def test_split_model_id(model_id, expected):
    assert split_model_id(model_id) == expected


def test_reasoning_settings_only_for_reasoning_models():
    assert reasoning_settings("anthropic", "claude-sonnet-4-5", 1024) is None
    assert reasoning_settings("anthropic", "claude-sonnet-4-5-thinking", 1024) == {
        "anthropic_thinking": {"type": "enabled", "budget_tokens": 1024}
    }
    assert reasoning_settings("deepseek", "deepseek-reasoner", 1024) is None


def test_merge_model_settings():
    assert merge_model_settings(None, None) is None
    assert merge_model_settings({"temperature": 0.2, "max_tokens": 100}, {"temperature": 1.0}) == {
        "temperature": 1.0,
        "max_tokens": 100,
    }
