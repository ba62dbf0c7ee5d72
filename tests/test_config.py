from pathlib import Path

import pytest

from vibex.config import Settings
from vibex.errors import ApiKeyNotConfiguredError, InvalidModelFormatError, ModelNotConfiguredError

_ENV_NAMES = ("VIBEX_MODEL", "VIBEX_API_KEY", "VIBEX_API_BASE", "VIBEX_RETRY_MAX_ATTEMPTS", "VIBEX_PAUSE_ON_FAILURE")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_settings_read_prefixed_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VIBEX_MODEL", "openai:gpt-4o-mini")
    monkeypatch.setenv("VIBEX_API_KEY", "sk-test")
    monkeypatch.setenv("VIBEX_RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("VIBEX_PAUSE_ON_FAILURE", "true")

    settings = Settings(_env_file=None)

    assert settings.require_model() == "openai:gpt-4o-mini"
    assert settings.retry_configuration().max_attempts == 5
    assert settings.engine_config().pause_on_failure is True


def test_require_model_reports_missing_model() -> None:
    with pytest.raises(ModelNotConfiguredError):
        Settings(_env_file=None).require_model()


@pytest.mark.parametrize("model", ["gpt-4o", "openai:", ":gpt-4o"])
def test_require_model_rejects_bad_format(model: str) -> None:
    with pytest.raises(InvalidModelFormatError):
        Settings(_env_file=None, model=model, api_key="sk").require_model()


def test_require_model_needs_api_key_for_hosted_providers() -> None:
    with pytest.raises(ApiKeyNotConfiguredError):
        Settings(_env_file=None, model="anthropic:claude-sonnet-4-5").require_model()

    assert Settings(_env_file=None, model="ollama:llama3").require_model() == "ollama:llama3"
    assert (
        Settings(_env_file=None, model="openai:local", api_base="http://localhost:8000/v1").require_model()
        == "openai:local"
    )


def test_builders_carry_settings_through(tmp_path: Path) -> None:
    settings = Settings(
        _env_file=None,
        model="openai:gpt-4o-mini",
        api_key="sk",
        system_prompt="be brief",
        max_tokens=256,
        temperature=0.2,
        retry_initial_delay_ms=10,
        task_timeout_seconds=5,
        workspace_path=tmp_path,
    )

    generation = settings.generation_config()
    assert (generation.model, generation.system_prompt, generation.max_tokens, generation.temperature) == (
        "openai:gpt-4o-mini",
        "be brief",
        256,
        0.2,
    )
    engine = settings.engine_config()
    assert engine.default_timeout == 5
    assert engine.retry.initial_delay_ms == 10
    assert engine.working_directory == tmp_path.resolve()


def test_generation_config_requires_a_model() -> None:
    with pytest.raises(ModelNotConfiguredError):
        Settings(_env_file=None).generation_config()
