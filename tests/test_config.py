from __future__ import annotations

from pathlib import Path

import pytest

from portfolio_chat.config import build_settings, env_overrides, load_config


def test_missing_file_gives_defaults(tmp_path: Path, clean_env):
    cfg = load_config(str(tmp_path / "nope.yaml"))
    settings = build_settings(cfg)
    assert settings.storage_backend == "memory"
    assert settings.rate_limit_max == 15
    assert settings.gateway.max_retries == 5
    assert settings.gateway.styles["NORMAL"].startswith("Respond in a balanced")


def test_env_overrides_and_secrets(tmp_path: Path, clean_env, monkeypatch: pytest.MonkeyPatch):
    path = tmp_path / "c.yaml"
    path.write_text("rate_limit:\n  max_requests: 3\nowner:\n  email: me@example.com\n", encoding="utf-8")
    monkeypatch.setenv("PORTFOLIO_CHAT__RATE_LIMIT__MAX_REQUESTS", "30")
    monkeypatch.setenv("PORTFOLIO_CHAT__GEMINI__BASE_DELAY", "0.5")
    monkeypatch.setenv("GEMINI_API_KEY", "secret")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/1")

    settings = build_settings(load_config(str(path)))
    assert settings.rate_limit_max == 30
    assert settings.gateway.base_delay == 0.5
    assert settings.gateway.api_key == "secret"
    assert settings.redis_url == "redis://cache:6379/1"
    assert settings.gateway.profile.email == "me@example.com"


def test_config_path_from_env(tmp_path: Path, clean_env, monkeypatch: pytest.MonkeyPatch):
    path = tmp_path / "c.yaml"
    path.write_text("styles:\n  pirate: Talk like a pirate.\n", encoding="utf-8")
    monkeypatch.setenv("PORTFOLIO_CHAT_CONFIG", str(path))
    settings = build_settings(load_config())
    assert settings.gateway.styles["PIRATE"] == "Talk like a pirate."
    with pytest.raises(TypeError):
        settings.gateway.styles["X"] = "y"  # type: ignore[index]


def test_invalid_yaml_raises(tmp_path: Path, clean_env):
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_config(str(path))


def test_shipped_default_config(project_root: Path, clean_env):
    settings = build_settings(load_config(str(project_root / "config" / "default.yaml")))
    assert settings.gateway.model == "gemini-2.0-flash"
    assert settings.gateway.generation.top_k == 40
    assert "get in touch" in settings.gateway.contact_keywords
    assert settings.cors_origins == ("http://localhost:3000",)


def test_overrides_from_injected_environ(tmp_path: Path):
    path = tmp_path / "c.yaml"
    path.write_text("storage: memory\nserver:\n  log_level: info\n", encoding="utf-8")
    environ = {
        "PORTFOLIO_CHAT__STORAGE__BACKEND": "redis",
        "PORTFOLIO_CHAT__STORAGE__REDIS_URL": "none",
        "PORTFOLIO_CHAT__SERVER__CORS_ORIGINS": "https://a.dev, https://b.dev",
        "PORTFOLIO_CHAT__GEMINI__FRAGMENT_SIZE": "40",
        "PORTFOLIO_CHAT__": "ignored",
        "UNRELATED": "1",
    }
    cfg = load_config(str(path), environ=environ)
    # The scalar "storage: memory" is replaced by a section.
    assert cfg["storage"] == {"backend": "redis", "redis_url": None}

    settings = build_settings(cfg)
    assert settings.storage_backend == "redis"
    assert settings.redis_url is None
    assert settings.cors_origins == ("https://a.dev", "https://b.dev")
    assert settings.gateway.fragment_size == 40
    assert settings.log_level == "INFO"


def test_override_values_are_coerced():
    pairs = dict(
        (".".join(path), value)
        for path, value in env_overrides(
            {
                "PORTFOLIO_CHAT__A__FLAG": "TRUE",
                "PORTFOLIO_CHAT__A__COUNT": "7",
                "PORTFOLIO_CHAT__A__RATIO": "0.25",
                "PORTFOLIO_CHAT__A__NAME": "gemini-2.0-flash",
            }
        )
    )
    assert pairs == {"a.flag": True, "a.count": 7, "a.ratio": 0.25, "a.name": "gemini-2.0-flash"}
