"""Durable batch id -> display name mapping.

The whole mapping lives in one JSON file named after a fixed namespaced
key and is rewritten in full on every mutation. Writers re-read the file
under a lock immediately before writing so the listing refresh (running in
a worker thread) and a stream's started handler never lose each other's
updates.
"""

from __future__ import annotations

import json
import logging
import os
import random
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger("verifystream.names")

_ADJECTIVES = (
    "Marketing",
    "Sales",
    "Customer",
    "Product",
    "Newsletter",
    "Outreach",
    "Promotional",
    "Campaign",
    "Lead",
    "Prospect",
)

_NOUNS = (
    "List",
    "Contacts",
    "Database",
    "Subscribers",
    "Audience",
    "Segment",
    "Group",
    "Collection",
    "Batch",
    "Emails",
)


def generate_batch_name(now: Optional[datetime] = None, rng: Optional[random.Random] = None) -> str:
    """Cosmetic placeholder such as ``"Lead Segment Oct 2026"``."""
    now = now or datetime.now()
    rng = rng or random
    return f"{rng.choice(_ADJECTIVES)} {rng.choice(_NOUNS)} {now.strftime('%b')} {now.year}"


class NameDirectory:
    """File-backed key/value store of batch display names."""

    def __init__(self, path: Path, *, name_factory=generate_batch_name):
        self._path = Path(path)
        self._name_factory = name_factory
        self._lock = threading.Lock()
        self._names: Optional[dict[str, str]] = None

    @property
    def path(self) -> Path:
        return self._path

    def _read_file(self) -> dict[str, str]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Ignoring corrupt name directory %s: %s", self._path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring name directory %s: expected an object", self._path)
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _write_file(self, names: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=".names-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(names, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _loaded(self) -> dict[str, str]:
        # Load on first access per session.
        if self._names is None:
            self._names = self._read_file()
        return self._names

    def get(self, batch_id: str) -> Optional[str]:
        with self._lock:
            return self._loaded().get(batch_id)

    def resolve(self, batch_id: str) -> str:
        """Stored name for ``batch_id``, else a fresh placeholder (not persisted)."""
        name = self.get(batch_id)
        if name:
            return name
        return self._name_factory()

    def assign(self, batch_id: str, name: str) -> None:
        """Upsert a name. Last write wins."""
        with self._lock:
            names = self._read_file()
            names[batch_id] = name
            self._write_file(names)
            self._names = names
        logger.debug("Named batch %s %r", batch_id, name)

    def assign_missing(self, batch_ids: Iterable[str]) -> dict[str, str]:
        """Give every id without a name a placeholder. Returns the new entries."""
        with self._lock:
            names = self._read_file()
            added = {
                batch_id: self._name_factory()
                for batch_id in dict.fromkeys(batch_ids)
                if not names.get(batch_id)
            }
            if added:
                names.update(added)
                self._write_file(names)
            self._names = names
        if added:
            logger.info("Generated names for %d unnamed batches", len(added))
        return added

    def all(self) -> dict[str, str]:
        with self._lock:
            return dict(self._loaded())

    def reload(self) -> None:
        with self._lock:
            self._names = self._read_file()
