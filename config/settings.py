"""
Configuration loader for the PageCast service.
Values come from settings.yaml, with ${VAR} and ${VAR:-default} references
filled in from the environment (python-dotenv loads .env first in api.main).
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_FORWARD_TEMPLATE = (
    'ขอบคุณสำหรับความคิดเห็นของคุณ: "{comment_text}"\n\n'
    "เราจะติดต่อกลับโดยเร็วที่สุด!"
)

DEFAULT_QUICK_REPLIES = [
    {
        "id": "1",
        "title": "ขอบคุณสำหรับความสนใจ",
        "text": "ขอบคุณสำหรับความสนใจค่ะ สามารถสอบถามข้อมูลเพิ่มเติมได้ทาง inbox นะคะ",
    },
    {
        "id": "2",
        "title": "ส่งข้อมูลทาง inbox",
        "text": "สวัสดีค่ะ ทางเราได้ส่งข้อมูลไปทาง inbox แล้วนะคะ กรุณาตรวจสอบข้อความค่ะ",
    },
    {
        "id": "3",
        "title": "ติดต่อกลับ",
        "text": "ขอบคุณค่ะ ทางเราจะติดต่อกลับโดยเร็วที่สุดค่ะ",
    },
]


@dataclass
class AuthConfig:
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_expires_days: int = 7
    client_url: str = "http://localhost:3000"
    trial_days: int = 14


@dataclass
class FacebookConfig:
    app_id: str = ""
    app_secret: str = ""
    api_version: str = "v18.0"
    callback_url: str = ""
    webhook_verify_token: str = ""
    send_delay_ms: int = 100              # pause between outbound Messenger sends
    oauth_scopes: list[str] = field(default_factory=lambda: [
        "email", "public_profile", "pages_show_list",
        "pages_messaging", "pages_read_engagement",
    ])


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./pagecast.db"  # postgresql:// | mysql:// | sqlite://
    pool_size: int = 10
    max_overflow: int = 20
    pool_recycle: int = 1800              # seconds
    sqlite_busy_timeout: float = 15.0     # seconds a writer waits on a locked SQLite file


@dataclass
class QueueConfig:
    backend: str = "redis"                # "redis" with in-memory fallback, or "memory"
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "pagecast-workers"
    consumer_concurrency: int = 1
    delayed_promote_interval: int = 5     # seconds between delayed-queue scans
    retry_backoff_base: int = 60          # base seconds for exponential retry backoff
    memory_dispatch_delay: float = 1.0    # seconds before the in-memory queue hands a job out


@dataclass
class SchedulerConfig:
    enabled: bool = True
    timezone: str = "UTC"


@dataclass
class CommentsConfig:
    forward_template: str = DEFAULT_FORWARD_TEMPLATE
    quick_replies: list[dict[str, Any]] = field(
        default_factory=lambda: [dict(r) for r in DEFAULT_QUICK_REPLIES]
    )


@dataclass
class RetentionConfig:
    months: int = 6


@dataclass
class Settings:
    app_name: str = "PageCast"
    debug: bool = False
    auth: AuthConfig = field(default_factory=AuthConfig)
    facebook: FacebookConfig = field(default_factory=FacebookConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    comments: CommentsConfig = field(default_factory=CommentsConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)


_settings: Optional[Settings] = None

_ENV_REF = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")

# top-level YAML key -> dataclass for that section
_SECTIONS = {
    "auth": AuthConfig,
    "facebook": FacebookConfig,
    "database": DatabaseConfig,
    "queue": QueueConfig,
    "scheduler": SchedulerConfig,
    "comments": CommentsConfig,
    "retention": RetentionConfig,
}


def _expand_env(node: Any) -> Any:
    """${NAME} takes the env value (left as-is when unset); ${NAME:-x} falls back to x."""
    if isinstance(node, dict):
        return {key: _expand_env(val) for key, val in node.items()}
    if isinstance(node, list):
        return [_expand_env(item) for item in node]
    if not isinstance(node, str):
        return node

    def lookup(ref: re.Match) -> str:
        name, fallback = ref.groups()
        if fallback is None:
            return os.environ.get(name, ref.group(0))
        return os.environ.get(name) or fallback

    return _ENV_REF.sub(lookup, node)


def _section(cls, raw: dict[str, Any]):
    """Dataclass defaults overlaid with the keys of ``raw`` it knows about."""
    names = {f.name for f in fields(cls)}
    return replace(cls(), **{k: v for k, v in (raw or {}).items() if k in names})


def load_settings(config_path: str = None) -> Settings:
    """Read settings.yaml (or $PAGECAST_CONFIG) and cache the result.

    A missing file yields the built-in defaults.
    """
    global _settings

    path = Path(config_path or os.environ.get("PAGECAST_CONFIG")
                or Path(__file__).with_name("settings.yaml"))
    settings = Settings()

    if path.is_file():
        raw = _expand_env(yaml.safe_load(path.read_text(encoding="utf-8")) or {})
        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        for key, cls in _SECTIONS.items():
            if key in raw:
                setattr(settings, key, _section(cls, raw[key]))

    _settings = settings
    return settings


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Install an already-built Settings object (used by scripts and tests)."""
    global _settings
    _settings = settings
