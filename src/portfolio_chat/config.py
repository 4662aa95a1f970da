"""Configuration loading for the portfolio chat server.

The YAML file is chosen from, in order: the explicit ``path`` argument, the
``PORTFOLIO_CHAT_CONFIG`` environment variable, then ``config/default.yaml``.

Two environment layers are applied on top of the file:

* ``PORTFOLIO_CHAT__<SECTION>__<KEY>=value`` sets a nested key, e.g.
  ``PORTFOLIO_CHAT__RATE_LIMIT__MAX_REQUESTS=30``. Values are coerced to
  bool, int, float or None where they parse as one.
* ``GEMINI_API_KEY`` (or ``GOOGLE_API_KEY``) and ``REDIS_URL`` carry secrets
  that should not live in the file.

The resulting dict is frozen into :class:`Settings` so components receive an
immutable view at construction time.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import yaml

from .gateway import DEFAULT_CONTACT_KEYWORDS, DEFAULT_STYLES, GatewayConfig, GenerationConfig
from .models import OwnerProfile

logger = logging.getLogger(__name__)

CONFIG_ENV = "PORTFOLIO_CHAT_CONFIG"
DEFAULT_CONFIG_PATH = "config/default.yaml"
ENV_PREFIX = "PORTFOLIO_CHAT__"

_LITERALS: Mapping[str, Any] = MappingProxyType({"true": True, "false": False, "null": None, "none": None})


# -----------------------------
# Environment layers
# -----------------------------
def _coerce(value: str) -> Any:
    lowered = value.strip().lower()
    if lowered in _LITERALS:
        return _LITERALS[lowered]
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    return value


def env_overrides(environ: Mapping[str, str]) -> Iterator[Tuple[List[str], Any]]:
    """Yield ``(key path, value)`` for every prefixed variable, sorted by name."""
    for name in sorted(environ):
        if not name.startswith(ENV_PREFIX):
            continue
        path = [p for p in name[len(ENV_PREFIX):].lower().split("__") if p]
        if not path:
            logger.warning("Ignoring override %s with no key", name)
            continue
        yield path, _coerce(environ[name])


def _set_path(cfg: Dict[str, Any], path: List[str], value: Any) -> None:
    node = cfg
    for key in path[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            # A scalar in the way is replaced by a section.
            child = node[key] = {}
        node = child
    node[path[-1]] = value


def _apply_environment(cfg: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    for path, value in env_overrides(environ):
        logger.debug("Config override %s", ".".join(path))
        _set_path(cfg, path, value)

    api_key = environ.get("GEMINI_API_KEY") or environ.get("GOOGLE_API_KEY")
    if api_key:
        _set_path(cfg, ["gemini", "api_key"], api_key)
    if environ.get("REDIS_URL"):
        _set_path(cfg, ["storage", "redis_url"], environ["REDIS_URL"])
    return cfg


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise RuntimeError(f"Failed to parse config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise RuntimeError(f"Invalid config format in {path}, expected a mapping.")
    return data


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Load the YAML config with environment layers applied.

    A missing file is not an error: the server starts on built-in defaults
    with the in-memory store.
    """
    environ = os.environ if environ is None else environ
    path_obj = Path(path or environ.get(CONFIG_ENV) or DEFAULT_CONFIG_PATH)
    if path_obj.exists():
        cfg = _read_yaml(path_obj)
    else:
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        cfg = {"storage": {"backend": "memory"}}
    return _apply_environment(cfg, environ)


# -----------------------------
# Frozen settings
# -----------------------------

@dataclass(frozen=True)
class Settings:
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    storage_backend: str = "memory"
    redis_url: Optional[str] = None
    rate_limit_max: int = 15
    rate_limit_window: float = 24 * 60 * 60
    history_max_turns: int = 20
    history_ttl: float = 24 * 60 * 60
    max_message_length: int = 4000
    portfolio_path: Optional[str] = "config/portfolio.yaml"
    cors_origins: Tuple[str, ...] = ("http://localhost:3000",)
    log_level: str = "INFO"


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = cfg.get(name) or {}
    return value if isinstance(value, dict) else {}


def build_settings(cfg: Dict[str, Any]) -> Settings:
    """Freeze a loaded config dict into :class:`Settings`."""
    gem = _section(cfg, "gemini")
    gen = _section(gem, "generation")
    owner = _section(cfg, "owner")
    storage = _section(cfg, "storage")
    limits = _section(cfg, "rate_limit")
    history = _section(cfg, "conversation")
    server = _section(cfg, "server")

    styles = dict(DEFAULT_STYLES)
    for name, text in (_section(cfg, "styles")).items():
        styles[str(name).upper()] = str(text)

    keywords = gem.get("contact_keywords") or DEFAULT_CONTACT_KEYWORDS
    defaults = OwnerProfile()
    profile = OwnerProfile(
        name=str(owner.get("name", defaults.name)),
        position=str(owner.get("position", defaults.position)),
        email=str(owner.get("email", defaults.email)),
        github_url=str(owner.get("github_url", defaults.github_url)),
        linkedin_url=str(owner.get("linkedin_url", defaults.linkedin_url)),
    )
    generation = GenerationConfig(
        temperature=float(gen.get("temperature", 0.7)),
        top_k=int(gen.get("top_k", 40)),
        top_p=float(gen.get("top_p", 0.95)),
        max_output_tokens=int(gen.get("max_output_tokens", 8192)),
        stop_sequences=tuple(gen.get("stop_sequences") or ()),
        safety_threshold=str(gen.get("safety_threshold", "BLOCK_MEDIUM_AND_ABOVE")),
    )
    gateway = GatewayConfig(
        api_key=str(gem.get("api_key", "") or ""),
        base_url=str(gem.get("base_url", "https://generativelanguage.googleapis.com")),
        model=str(gem.get("model", "gemini-2.0-flash")),
        max_retries=int(gem.get("max_retries", 5)),
        base_timeout=float(gem.get("base_timeout", 30.0)),
        timeout_step=float(gem.get("timeout_step", 5.0)),
        base_delay=float(gem.get("base_delay", 1.0)),
        fragment_size=int(gem.get("fragment_size", 25)),
        fragment_delay=float(gem.get("fragment_delay", 0.05)),
        generation=generation,
        profile=profile,
        styles=MappingProxyType(styles),
        contact_keywords=tuple(str(k).lower() for k in keywords),
    )

    origins = server.get("cors_origins") or Settings.cors_origins
    if isinstance(origins, str):
        origins = [o.strip() for o in origins.split(",") if o.strip()]

    return Settings(
        gateway=gateway,
        storage_backend=str(storage.get("backend", "memory")),
        redis_url=storage.get("redis_url"),
        rate_limit_max=int(limits.get("max_requests", 15)),
        rate_limit_window=float(limits.get("window_seconds", 24 * 60 * 60)),
        history_max_turns=int(history.get("max_turns", 20)),
        history_ttl=float(history.get("ttl_seconds", 24 * 60 * 60)),
        max_message_length=int(cfg.get("max_message_length", 4000)),
        portfolio_path=cfg.get("portfolio_path", "config/portfolio.yaml"),
        cors_origins=tuple(str(o) for o in origins),
        log_level=str(server.get("log_level", "INFO")).upper(),
    )
