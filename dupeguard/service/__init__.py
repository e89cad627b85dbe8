"""Service layer: configuration, webhook alerts and the admin API."""

from .config import ConfigManager, Settings, WebhookSettings, get_settings, load_config_file
from .webhook import WebhookDispatcher, build_webhook_payload
from .web import create_app

__all__ = [
    "ConfigManager",
    "Settings",
    "WebhookDispatcher",
    "WebhookSettings",
    "build_webhook_payload",
    "create_app",
    "get_settings",
    "load_config_file",
]
