"""Configuration utilities for the DupeGuard service."""

from __future__ import annotations

import logging
import threading
from copy import deepcopy
from functools import lru_cache
from pathlib import Path
from typing import Any, Collection, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..errors import ConfigError, PersistenceError
from ..policy import DetectionPolicy, PolicyStore, policy_from_mapping
from ..state import normalize_kind

logger = logging.getLogger(__name__)

load_dotenv()

PLACEHOLDER_MARKER = "YOUR_WEBHOOK"
_LARGE_STACK_SECTIONS = ("large-stack", "large-stack-detection")


class Settings(BaseSettings):
    """Environment-backed settings for the service."""

    config_path: Path = Field(default=Path("config.yml"))
    data_directory: Path = Field(default=Path("data"))
    exemptions_file: str = Field(default="exceptions.json")
    cooldown_seconds: float = Field(default=5.0, ge=0.0)
    cooldown_max_entries: int = Field(default=10_000, ge=1)
    alert_queue_size: int = Field(default=256, ge=1)
    webhook_timeout: float = Field(default=10.0, gt=0.0)
    server_name: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="DUPEGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("config_path", "data_directory", mode="before")
    @classmethod
    def _expand_path(cls, value):
        if isinstance(value, str):
            return Path(value).expanduser()
        if isinstance(value, Path):
            return value.expanduser()
        raise ValueError("expected a filesystem path")

    @field_validator("server_name", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def exemptions_path(self) -> Path:
        return self.data_directory / self.exemptions_file


@lru_cache()
def get_settings() -> Settings:
    return Settings()


class WebhookSettings(BaseModel):
    """The ``discord`` section of the YAML configuration."""

    enabled: bool = False
    webhook_url: str = Field(default="", alias="webhook-url")
    username: str = "DupeDetection Bot"
    avatar_url: str = Field(default="", alias="avatar-url")
    mention_everyone: bool = Field(default=True, alias="mention-everyone")

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    @property
    def is_configured(self) -> bool:
        url = self.webhook_url.strip()
        return self.enabled and bool(url) and PLACEHOLDER_MARKER not in url

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "WebhookSettings":
        section = raw.get("discord")
        if not isinstance(section, Mapping):
            return cls()
        try:
            return cls.model_validate(dict(section))
        except ValidationError as exc:
            logger.warning("Invalid discord section, webhook disabled: %s", exc)
            return cls()


def load_config_file(path: Path) -> Dict[str, Any]:
    """Read ``path`` as YAML; a missing or malformed file yields ``{}``."""

    if not path.exists():
        logger.warning("Configuration file %s not found, using defaults", path)
        return {}
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError) as exc:
        logger.error("Failed to read configuration %s: %s", path, exc)
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.error("Configuration %s must contain a mapping at the top level", path)
        return {}
    return data


class ConfigManager:
    """Loads the YAML configuration and publishes policies into a store.

    The raw mapping is kept so that ``set_limit`` can write a single value
    back without discarding the rest of the operator's file.
    """

    def __init__(
        self,
        path: Path,
        store: Optional[PolicyStore] = None,
        *,
        known_kinds: Optional[Collection[str]] = None,
        autoload: bool = True,
    ) -> None:
        self.path = Path(path)
        self.store = store if store is not None else PolicyStore()
        self._known_kinds = known_kinds
        self._lock = threading.RLock()
        self._raw: Dict[str, Any] = {}
        self._webhook = WebhookSettings()
        if autoload:
            self.reload()

    @classmethod
    def from_settings(cls, settings: Settings, store: Optional[PolicyStore] = None) -> "ConfigManager":
        return cls(settings.config_path, store)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def policy(self) -> DetectionPolicy:
        return self.store.current

    @property
    def webhook(self) -> WebhookSettings:
        return self._webhook

    @property
    def raw(self) -> Dict[str, Any]:
        with self._lock:
            return deepcopy(self._raw)

    def reload(self) -> DetectionPolicy:
        with self._lock:
            raw = load_config_file(self.path)
            policy = policy_from_mapping(raw, known_kinds=self._known_kinds)
            self._raw = raw
            self._webhook = WebhookSettings.from_mapping(raw)
            self.store.swap(policy)
        logger.info(
            "Configuration loaded: %d stack limits, %d monitored items",
            len(policy.limits),
            len(policy.fingerprints),
        )
        return policy

    def set_limit(self, kind: str, amount: int) -> DetectionPolicy:
        """Set the stack limit for ``kind`` and write it back to the file.

        The new limit is live before the write; a failed write raises
        :class:`PersistenceError` with the in-memory change kept.
        """

        try:
            normalized = normalize_kind(kind)
        except ValueError:
            raise ConfigError(f"large-stack.limits.{kind}", f"invalid item kind {kind!r}") from None
        if self._known_kinds is not None and normalized not in self._known_kinds:
            raise ConfigError(f"large-stack.limits.{kind}", f"unknown item kind {normalized}")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise ConfigError(f"large-stack.limits.{normalized}", f"must be a non-negative integer, got {amount!r}")

        with self._lock:
            policy = self.store.update(lambda current: current.with_limit(normalized, amount))
            section = self._large_stack_section()
            limits = section.get("limits")
            if not isinstance(limits, dict):
                limits = {}
                section["limits"] = limits
            limits[normalized] = amount
            self._save()
        logger.info("Set stack limit for %s to %d", normalized, amount)
        return policy

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _large_stack_section(self) -> Dict[str, Any]:
        for name in _LARGE_STACK_SECTIONS:
            section = self._raw.get(name)
            if isinstance(section, dict):
                return section
        section: Dict[str, Any] = {}
        self._raw[_LARGE_STACK_SECTIONS[0]] = section
        return section

    def _save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(self._raw, handle, sort_keys=False, default_flow_style=False)
        except OSError as exc:
            logger.error("Failed to save configuration to %s: %s", self.path, exc)
            raise PersistenceError(f"could not write {self.path}: {exc}") from exc


__all__ = [
    "ConfigManager",
    "Settings",
    "WebhookSettings",
    "get_settings",
    "load_config_file",
]
