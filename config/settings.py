"""
Configuration loader for the admissions lead agent.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "anthropic"          # "anthropic" | "openai" | "none"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.7
    max_tokens: int = 300
    api_key: str = ""
    timeout_s: float = 10.0              # per attempt
    max_retries: int = 2                 # extra attempts on transient failures
    backoff_base_s: float = 0.3
    cooldown_s: float = 60.0             # minimum pause after a rate-limit response
    min_reply_chars: int = 5


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./admissions_agent.db"     # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                     # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                    # directory for file backend


@dataclass
class SessionConfig:
    expiry_hours: float = 24.0
    reaper_interval_s: float = 3600.0


@dataclass
class NudgeConfig:
    delay_s: float = 120.0
    affirmative_keywords: list[str] = field(default_factory=list)
    negative_keywords: list[str] = field(default_factory=list)


@dataclass
class EscalationConfig:
    max_retries: int = 3
    reset_user_data: bool = False        # clear collected fields when escalating
    hotline: str = "1900 6868"


@dataclass
class SecurityConfig:
    encryption_key: str = ""             # exactly 32 bytes


@dataclass
class ConversationConfig:
    ai_states: list[str] = field(
        default_factory=lambda: ["welcome", "major", "major_other", "custom_time"]
    )


@dataclass
class Settings:
    app_name: str = "AdmissionsAgent"
    debug: bool = False
    log_level: str = "INFO"
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    nudge: NudgeConfig = field(default_factory=NudgeConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)


_settings: Optional[Settings] = None

_ENV_PATTERN = re.compile(r'\$\{(\w+)\}')


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return _ENV_PATTERN.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def is_unresolved(value: str) -> bool:
    """True when a value still carries a ${VAR} the environment did not provide."""
    return bool(value) and _ENV_PATTERN.search(value) is not None


def validate_settings(settings: Settings) -> Settings:
    """Reject values the runtime cannot work with."""
    if settings.database.store_backend not in ("memory", "file", "sql"):
        raise ValueError(f"Unknown store backend: {settings.database.store_backend}")
    if settings.sessions.expiry_hours <= 0:
        raise ValueError("sessions.expiry_hours must be positive")
    if settings.sessions.reaper_interval_s <= 0:
        raise ValueError("sessions.reaper_interval_s must be positive")
    if settings.nudge.delay_s <= 0:
        raise ValueError("nudge.delay_s must be positive")
    if settings.escalation.max_retries < 1:
        raise ValueError("escalation.max_retries must be at least 1")
    if settings.llm.max_retries < 0 or settings.llm.timeout_s <= 0:
        raise ValueError("llm.max_retries must be >= 0 and llm.timeout_s positive")
    return settings


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "ADMISSIONS_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.log_level = raw.get("log_level", settings.log_level)

        if "llm" in raw:
            llm = raw["llm"]
            defaults = LLMConfig()
            settings.llm = LLMConfig(
                provider=llm.get("provider", defaults.provider),
                model=llm.get("model", defaults.model),
                temperature=llm.get("temperature", defaults.temperature),
                max_tokens=llm.get("max_tokens", defaults.max_tokens),
                api_key=llm.get("api_key", ""),
                timeout_s=llm.get("timeout_s", defaults.timeout_s),
                max_retries=llm.get("max_retries", defaults.max_retries),
                backoff_base_s=llm.get("backoff_base_s", defaults.backoff_base_s),
                cooldown_s=llm.get("cooldown_s", defaults.cooldown_s),
                min_reply_chars=llm.get("min_reply_chars", defaults.min_reply_chars),
            )

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
            )

        if "sessions" in raw:
            s = raw["sessions"]
            settings.sessions = SessionConfig(
                expiry_hours=s.get("expiry_hours", 24.0),
                reaper_interval_s=s.get("reaper_interval_s", 3600.0),
            )

        if "nudge" in raw:
            n = raw["nudge"]
            settings.nudge = NudgeConfig(
                delay_s=n.get("delay_s", 120.0),
                affirmative_keywords=n.get("affirmative_keywords", []),
                negative_keywords=n.get("negative_keywords", []),
            )

        if "escalation" in raw:
            e = raw["escalation"]
            settings.escalation = EscalationConfig(
                max_retries=e.get("max_retries", 3),
                reset_user_data=e.get("reset_user_data", False),
                hotline=str(e.get("hotline", settings.escalation.hotline)),
            )

        if "security" in raw:
            sec = raw["security"]
            key = sec.get("encryption_key", "") or ""
            settings.security = SecurityConfig(
                encryption_key="" if is_unresolved(key) else key,
            )

        if "conversation" in raw:
            c = raw["conversation"]
            defaults = ConversationConfig()
            settings.conversation = ConversationConfig(
                ai_states=c.get("ai_states", defaults.ai_states),
            )

    validate_settings(settings)
    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
