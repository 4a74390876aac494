"""Tests for YAML configuration loading."""

import pytest
from llm_chat_bot.ai.catalog import DEFAULT_MODEL
from llm_chat_bot.config import load_config
from llm_chat_bot.errors import ConfigurationError

CONFIG = """\
log_level: DEBUG
data_dir: ${TEST_DATA_DIR}
telegram:
  token: ${TEST_BOT_TOKEN}
  admin_ids: ${TEST_ADMIN_IDS}
openrouter:
  api_key: ${TEST_OPENROUTER_KEY}
  default_model: {model}
storage:
  db_path: ${data_dir}/bot.db
"""


def write_config(tmp_path, model=DEFAULT_MODEL):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG.replace("{model}", model))
    return path


@pytest.fixture(autouse=True)
def env(monkeypatch, tmp_path):
    monkeypatch.setenv("TEST_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("TEST_BOT_TOKEN", "123:abc")
    monkeypatch.setenv("TEST_ADMIN_IDS", "11, 22")
    monkeypatch.setenv("TEST_OPENROUTER_KEY", "sk-or-test")


def test_env_interpolation(tmp_path):
    config = load_config(write_config(tmp_path), env_path=tmp_path / "missing.env")

    assert config.log_level == "DEBUG"
    assert config.telegram.token == "123:abc"
    assert config.openrouter.api_key == "sk-or-test"
    assert config.storage.db_path == f"{tmp_path / 'data'}/bot.db"


def test_admin_ids_split(tmp_path):
    config = load_config(write_config(tmp_path), env_path=tmp_path / "missing.env")

    assert config.telegram.admin_ids == [11, 22]


def test_empty_admin_ids(tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_ADMIN_IDS", "")

    config = load_config(write_config(tmp_path), env_path=tmp_path / "missing.env")

    assert config.telegram.admin_ids == []


def test_defaults(tmp_path):
    config = load_config(write_config(tmp_path), env_path=tmp_path / "missing.env")

    assert config.openrouter.default_model == DEFAULT_MODEL
    assert config.openrouter.max_tokens == 2000
    assert config.openrouter.temperature == 0.7
    assert config.chat.context_limit == 10
    assert config.chat.hourly_token_limit == 100_000


def test_unknown_default_model(tmp_path):
    with pytest.raises(ConfigurationError, match="Unknown model"):
        load_config(write_config(tmp_path, model="acme/not-a-model"), env_path=tmp_path / "missing.env")


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_dotenv_file(tmp_path, monkeypatch):
    monkeypatch.delenv("TEST_BOT_TOKEN")
    env_file = tmp_path / ".env"
    env_file.write_text("TEST_BOT_TOKEN=from-dotenv\n")

    config = load_config(write_config(tmp_path), env_path=env_file)

    assert config.telegram.token == "from-dotenv"


def test_malformed_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("telegram: [unclosed\n")

    with pytest.raises(ConfigurationError, match="Invalid YAML"):
        load_config(path, env_path=tmp_path / "missing.env")


def test_missing_section(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("log_level: INFO\n")

    with pytest.raises(ConfigurationError) as exc_info:
        load_config(path, env_path=tmp_path / "missing.env")

    assert exc_info.value.details == {"path": str(path)}
