"""Webhook alert delivery for DupeGuard.

Alerts are published from the audit path into a bounded queue and sent by a
single daemon thread, so a slow or unreachable webhook never delays an audit.
"""

from __future__ import annotations

import json
import logging
import queue
import re
import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

import httpx

from .. import __version__
from ..errors import DeliveryError
from ..handler import AlertEvent
from ..state import FINGERPRINT_DETECTOR, AuditContext, ViolationBatch
from .config import ConfigManager, Settings, WebhookSettings

logger = logging.getLogger(__name__)

QUANTITY_COLOR = 0xFF0000
FINGERPRINT_COLOR = 0xFF4500
AVATAR_URL = "https://crafatar.com/avatars/{actor_id}?size=64&overlay"
_STOP = object()
_SIGNATURE_TAG = re.compile(r";([a-z_]+)=")


def format_kind(kind: str) -> str:
    """``DIAMOND_SWORD`` -> ``Diamond Sword``."""

    return " ".join(part.capitalize() for part in kind.split("_") if part)


def _player_field(context: AuditContext) -> Dict[str, object]:
    return {
        "name": "👤 Player",
        "value": f"**{context.display_name}**\nUUID: `{context.actor_id}`",
        "inline": True,
    }


def _container_fields(context: AuditContext) -> List[Dict[str, object]]:
    container = format_kind(context.container_kind)
    location = context.container_location
    if location is None:
        return [{"name": "📦 Container Details", "value": f"**Type:** {container}", "inline": False}]
    return [
        {
            "name": "📦 Container Details",
            "value": (
                f"**Type:** {container}\n"
                f"**World:** {location.world}\n"
                f"**Location:** {location.x}, {location.y}, {location.z}"
            ),
            "inline": False,
        },
        {
            "name": "🎯 Quick Actions",
            "value": f"**Teleport Command:**\n```\n/tp {location.x} {location.y} {location.z}\n```",
            "inline": False,
        },
    ]


def _server_field(server_name: Optional[str], detected_at: datetime) -> Dict[str, object]:
    return {
        "name": "🖥️ Server Information",
        "value": f"**Server:** {server_name or 'unknown'}\n**Time:** <t:{int(detected_at.timestamp())}:F>",
        "inline": False,
    }


def _quantity_embed(batch: ViolationBatch) -> Dict[str, object]:
    multiple = len(batch) > 1
    if multiple:
        lines = [
            f"**{format_kind(v.kind)}:** {v.observed_quantity} (limit {v.limit}, excess {v.excess})"
            for v in batch
        ]
        details = {"name": "⚠️ Violations", "value": "\n".join(lines), "inline": False}
    else:
        v = batch.violations[0]
        details = {
            "name": "⚠️ Violation Details",
            "value": (
                f"**Item:** {format_kind(v.kind)}\n"
                f"**Amount:** {v.observed_quantity}\n"
                f"**Limit:** {v.limit}\n"
                f"**Excess:** {v.excess}"
            ),
            "inline": True,
        }
    return {
        "title": "🚨 Multiple Dupe Detection Alerts" if multiple else "🚨 Dupe Detection Alert",
        "description": (
            "Multiple suspicious item stacks detected in same container!"
            if multiple
            else "Suspicious item stacking detected!"
        ),
        "color": QUANTITY_COLOR,
        "fields": [_player_field(batch.context), details],
    }


def signature_fields(signature: Optional[str]) -> Dict[str, object]:
    """Decode the ``tag=<json>`` parts of a fingerprint signature.

    Values are read with a JSON decoder rather than split on ``;`` so a
    separator inside a display name stays part of the name. Decoding stops
    at the first malformed part and returns what was read so far.
    """

    fields: Dict[str, object] = {}
    if not signature:
        return fields
    decoder = json.JSONDecoder()
    position = signature.find(";")
    while 0 <= position < len(signature):
        match = _SIGNATURE_TAG.match(signature, position)
        if match is None:
            break
        try:
            value, position = decoder.raw_decode(signature, match.end())
        except ValueError:
            break
        fields[match.group(1)] = value
    return fields


def _group_details(signature: Optional[str]) -> str:
    fields = signature_fields(signature)
    details = []
    if "name" in fields:
        details.append(f"Name: {fields['name']}")
    enchantments = fields.get("enchantments")
    if isinstance(enchantments, dict) and enchantments:
        details.append(f"Enchants: {len(enchantments)}")
    if fields.get("damage"):
        details.append(f"Damage: {fields['damage']}")
    return " • ".join(details) if details else "Standard item"


def _fingerprint_embed(batch: ViolationBatch) -> Dict[str, object]:
    groups = [
        f"**Group {number}:** {v.observed_quantity}x {format_kind(v.kind)} (minimum {v.limit})\n"
        f"*{_group_details(v.signature)}*"
        for number, v in enumerate(batch, start=1)
    ]
    thresholds = ", ".join(str(limit) for limit in sorted({v.limit for v in batch}))
    return {
        "title": "🔍 NBT Duplicate Detection Alert",
        "description": "Identical NBT items detected - possible duplication exploit!",
        "color": FINGERPRINT_COLOR,
        "fields": [
            _player_field(batch.context),
            {"name": "🚨 Identical Items Found", "value": "\n".join(groups), "inline": False},
            {
                "name": "⚙️ Detection Settings",
                "value": f"**Minimum Duplicates:** {thresholds}\n**Detection Type:** Identical NBT Data",
                "inline": True,
            },
        ],
    }


def build_webhook_payload(
    event: AlertEvent,
    settings: WebhookSettings,
    *,
    server_name: Optional[str] = None,
    version: str = __version__,
) -> Dict[str, object]:
    """Render ``event`` as a Discord-compatible webhook document."""

    batch = event.batch
    if batch.detector == FINGERPRINT_DETECTOR:
        embed = _fingerprint_embed(batch)
        footer = f"DupeGuard v{version} • NBT Duplicate Detection"
    else:
        embed = _quantity_embed(batch)
        footer = f"DupeGuard v{version}"
    fields = embed["fields"]
    fields.extend(_container_fields(batch.context))  # type: ignore[union-attr]
    fields.append(_server_field(server_name, batch.detected_at))  # type: ignore[union-attr]
    embed["thumbnail"] = {"url": AVATAR_URL.format(actor_id=batch.context.actor_id)}
    embed["timestamp"] = batch.detected_at.isoformat()
    embed["footer"] = {"text": footer}

    payload: Dict[str, object] = {"username": settings.username, "embeds": [embed]}
    if settings.mention_everyone:
        payload["content"] = "@everyone"
    if settings.avatar_url:
        payload["avatar_url"] = settings.avatar_url
    return payload


class WebhookDispatcher:
    """Bounded fire-and-forget alert sink backed by a sender thread."""

    def __init__(
        self,
        settings_provider: Callable[[], WebhookSettings],
        *,
        server_name: Optional[str] = None,
        queue_size: int = 256,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._settings_provider = settings_provider
        self._server_name = server_name
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=queue_size)
        self._client = httpx.Client(timeout=timeout, transport=transport)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._closed = False
        self.sent = 0
        self.failed = 0
        self.dropped = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        config: ConfigManager,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> "WebhookDispatcher":
        return cls(
            lambda: config.webhook,
            server_name=settings.server_name,
            queue_size=settings.alert_queue_size,
            timeout=settings.webhook_timeout,
            transport=transport,
        )

    # ------------------------------------------------------------------
    # AlertSink
    # ------------------------------------------------------------------
    def publish(self, event: AlertEvent) -> bool:
        if self._closed:
            logger.warning("Webhook dispatcher stopped, alert for %s not sent", event.context.display_name)
            return False
        settings = self._settings_provider()
        if not settings.is_configured:
            logger.debug("Webhook not configured, alert for %s not sent", event.context.display_name)
            return False
        try:
            self._queue.put_nowait((event, settings))
        except queue.Full:
            self.dropped += 1
            logger.warning("Alert queue full, dropping alert for %s", event.context.display_name)
            return False
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name="dupeguard-webhook", daemon=True)
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Deliver what is already queued, then stop the sender thread."""

        with self._lock:
            self._closed = True
            thread = self._thread
            self._thread = None
        if thread is not None:
            deadline = time.monotonic() + timeout
            while True:
                try:
                    self._queue.put(_STOP, timeout=0.1)
                    break
                except queue.Full:
                    if time.monotonic() >= deadline or not thread.is_alive():
                        break
            thread.join(max(0.0, deadline - time.monotonic()))
        self._client.close()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    def deliver(self, event: AlertEvent, settings: Optional[WebhookSettings] = None) -> None:
        """Send one alert synchronously; raises on failure."""

        if settings is None:
            settings = self._settings_provider()
        payload = build_webhook_payload(event, settings, server_name=self._server_name)
        response = self._client.post(settings.webhook_url, json=payload)
        if not response.is_success:
            raise DeliveryError(response.status_code, response.text)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                event, settings = item
                try:
                    self.deliver(event, settings)
                except DeliveryError as exc:
                    self.failed += 1
                    logger.warning("Webhook rejected alert: %s %s", exc, exc.body[:200])
                except httpx.HTTPError as exc:
                    self.failed += 1
                    logger.error("Failed to send webhook alert: %s", exc)
                except Exception:
                    self.failed += 1
                    logger.exception("Unexpected error while sending webhook alert")
                else:
                    self.sent += 1
            finally:
                self._queue.task_done()


__all__ = [
    "FINGERPRINT_COLOR",
    "QUANTITY_COLOR",
    "WebhookDispatcher",
    "build_webhook_payload",
    "format_kind",
    "signature_fields",
]
