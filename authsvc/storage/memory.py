from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from authsvc.logging import get_logger
from authsvc.storage.common import (
    normalize_email,
    revocation_from_record,
    revocation_to_record,
    user_from_record,
    user_to_record,
)
from authsvc.storage.errors import ConstraintViolation, StoreUnavailable
from authsvc.storage.models import RevocationEntry, User, utcnow


class MemoryStore:
    """In-memory user directory and revocation set, snapshotted to a JSON file.

    All reads hand out copies so callers never mutate stored records outside
    ``save``; the email uniqueness check and the write happen under one lock.
    """

    def __init__(self, fs_root: str = "/tmp/authsvc", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._email_index: Dict[str, str] = {}
        self.revocations: Dict[str, RevocationEntry] = {}
        # RLock so save() can call helpers that also take the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # users
    def find_by_email(self, email: str) -> Optional[User]:
        key = normalize_email(email)
        with self._data_lock:
            user_id = self._email_index.get(key)
            user = self.users.get(user_id) if user_id else None
            return replace(user) if user else None

    def exists_by_email(self, email: str) -> bool:
        with self._data_lock:
            return normalize_email(email) in self._email_index

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def save(self, user: User) -> User:
        """Insert or update ``user`` keyed by id; email stays unique across ids."""
        email = normalize_email(user.email)
        with self._data_lock:
            owner = self._email_index.get(email)
            if owner is not None and owner != user.id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            previous = self.users.get(user.id)
            stored = replace(user, email=email, updated_at=utcnow())
            if previous is not None:
                # id and creation time are immutable once written
                stored.created_at = previous.created_at
                if normalize_email(previous.email) != email:
                    self._email_index.pop(normalize_email(previous.email), None)
            self.users[user.id] = stored
            self._email_index[email] = user.id
            self._persist_state()
            return replace(stored)

    # revocations
    def insert_revocation(self, entry: RevocationEntry) -> None:
        with self._data_lock:
            # First write wins; a second logout of the same token is a no-op
            if entry.token_id in self.revocations:
                return
            self.revocations[entry.token_id] = entry
            self._persist_state()

    def revocation_exists(self, token_id: str) -> bool:
        now = utcnow()
        with self._data_lock:
            entry = self.revocations.get(token_id)
            if entry is None:
                return False
            if entry.is_expired(now):
                self.revocations.pop(token_id, None)
                return False
            return True

    def purge_expired_revocations(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            expired = [
                token_id
                for token_id, entry in self.revocations.items()
                if entry.is_expired(cutoff)
            ]
            for token_id in expired:
                self.revocations.pop(token_id, None)
            if expired:
                self._persist_state()
        if expired:
            self.logger.debug("revocations_purged", count=len(expired))
        return len(expired)

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [user_to_record(u) for u in self.users.values()],
            "revocations": [
                revocation_to_record(e) for e in self.revocations.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        users = [user_from_record(u) for u in data.get("users", [])]
        self.users = {u.id: u for u in users}
        self._email_index = {normalize_email(u.email): u.id for u in users}
        now = utcnow()
        self.revocations = {}
        for raw in data.get("revocations", []):
            entry = revocation_from_record(raw)
            if not entry.is_expired(now):
                self.revocations[entry.token_id] = entry
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            revocations=len(self.revocations),
        )
        return True
