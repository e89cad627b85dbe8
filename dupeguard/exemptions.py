"""Exemption registry for actors that are never audited."""
from __future__ import annotations

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import FrozenSet, List, Optional
from uuid import UUID

from .errors import PersistenceError

logger = logging.getLogger(__name__)


def canonical_identifier(identifier: str) -> str:
    """Return the stored form of ``identifier``.

    Well-formed UUIDs are rewritten to their canonical hyphenated form;
    anything else is treated as a username and only trimmed.
    """

    text = identifier.strip()
    try:
        return str(uuid.UUID(text))
    except ValueError:
        return text


class ExemptionRegistry:
    """Persisted set of exempt actors, by UUID or username.

    UUID comparison is case-sensitive on the canonical string form; username
    comparison is case-insensitive. Mutations are copy-on-write under a lock
    so that :meth:`is_exempt` can read without locking.
    """

    def __init__(self, storage_path: Optional[Path] = None, *, autoload: bool = True) -> None:
        self._storage_path = Path(storage_path) if storage_path is not None else None
        self._lock = threading.RLock()
        self._entries: FrozenSet[str] = frozenset()
        if autoload:
            self.reload()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def is_exempt(self, actor_id: UUID | str | None, display_name: Optional[str] = None) -> bool:
        entries = self._entries
        if actor_id is not None and str(actor_id) in entries:
            return True
        if display_name:
            if display_name in entries:
                return True
            folded = display_name.casefold()
            return any(entry.casefold() == folded for entry in entries)
        return False

    def list(self) -> List[str]:
        return sorted(self._entries)

    @property
    def count(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def add(self, identifier: str) -> bool:
        """Add ``identifier``; ``False`` when blank or already present.

        Raises :class:`PersistenceError` when the new set could not be
        written; the entry stays exempt in memory.
        """

        if not identifier or not identifier.strip():
            return False
        normalized = canonical_identifier(identifier)
        with self._lock:
            if normalized in self._entries:
                return False
            self._entries = self._entries | {normalized}
            self._save()
        logger.info("Added exemption for %s", normalized)
        return True

    def remove(self, identifier: str) -> bool:
        """Remove ``identifier``, falling back to a case-insensitive match."""

        if not identifier or not identifier.strip():
            return False
        normalized = canonical_identifier(identifier)
        with self._lock:
            if normalized in self._entries:
                self._entries = self._entries - {normalized}
            else:
                folded = normalized.casefold()
                matches = {entry for entry in self._entries if entry.casefold() == folded}
                if not matches:
                    return False
                self._entries = self._entries - matches
            self._save()
        logger.info("Removed exemption for %s", normalized)
        return True

    def clear(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries = frozenset()
            self._save()
        return removed

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    def reload(self) -> int:
        """Re-read the exemption file; an unreadable file yields an empty set."""

        with self._lock:
            self._entries = frozenset(self._load())
            return len(self._entries)

    def _load(self) -> List[str]:
        if self._storage_path is None or not self._storage_path.exists():
            return []
        try:
            data = json.loads(self._storage_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Failed to read exemptions from %s: %s", self._storage_path, exc)
            return []
        if not isinstance(data, list):
            logger.error("Exemption file %s does not contain a JSON array", self._storage_path)
            return []
        entries = [str(item).strip() for item in data if isinstance(item, str) and item.strip()]
        logger.info("Loaded %d exemptions", len(entries))
        return entries

    def _save(self) -> None:
        if self._storage_path is None:
            return
        payload = json.dumps(sorted(self._entries), indent=2)
        try:
            self._storage_path.parent.mkdir(parents=True, exist_ok=True)
            self._storage_path.write_text(payload + "\n", encoding="utf-8")
        except OSError as exc:
            logger.error("Failed to save exemptions to %s: %s", self._storage_path, exc)
            raise PersistenceError(f"could not write {self._storage_path}: {exc}") from exc
        logger.debug("Saved %d exemptions", len(self._entries))


__all__ = ["ExemptionRegistry", "canonical_identifier"]
