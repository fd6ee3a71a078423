"""
Per-user credential records.

Every query in this module is built by ``VaultStore._owned``, which pins it to
the caller's user id. A record that belongs to someone else therefore looks
exactly like one that does not exist.
"""
import logging
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, List, Mapping, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError

from crypto_util import EncryptionService
from errors import CryptoError, NotFoundOrForbidden, StorageError
from models import db, VaultEntry, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "general"
ALL_CATEGORIES = "all"


class _Unset:
    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET: Any = _Unset()


def as_text(value: Any) -> Optional[str]:
    """JSON scalar as text; None for null, lists and objects."""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


@dataclass
class EntryUpdate:
    """Fields to change on an entry; anything left UNSET is not touched.

    An empty string is a real value: ``notes=""`` clears the notes.
    """
    title: Any = UNSET
    username: Any = UNSET
    password: Any = UNSET
    url: Any = UNSET
    notes: Any = UNSET
    category: Any = UNSET

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EntryUpdate":
        values = {}
        for f in fields(cls):
            value = as_text(data.get(f.name))
            if value is not None:
                values[f.name] = value
        return cls(**values)

    def present(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)
                if getattr(self, f.name) is not UNSET}

    def is_empty(self) -> bool:
        return not self.present()


@dataclass
class CredentialRecord:
    id: int
    title: str
    username: str
    password: str
    url: str
    notes: str
    category: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "username": self.username,
            "password": self.password,
            "url": self.url,
            "notes": self.notes,
            "category": self.category,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class VaultStore:
    def __init__(self, crypto: EncryptionService):
        self.crypto = crypto

    # ---------- Helpers ----------
    @staticmethod
    def _owned(user_id: int, *columns):
        """Query over the caller's entries only (whole rows, or the given columns)."""
        if columns:
            query = db.session.query(*columns)
        else:
            query = VaultEntry.query
        return query.filter(VaultEntry.user_id == user_id)

    def _seal_notes(self, notes: str) -> str:
        return self.crypto.encrypt_text(notes) if notes else ""

    def _open(self, entry: VaultEntry) -> CredentialRecord:
        try:
            password = self.crypto.decrypt_text(entry.password_ct) if entry.password_ct else ""
            notes = self.crypto.decrypt_text(entry.notes_ct) if entry.notes_ct else ""
        except CryptoError:
            logger.warning("Could not decrypt vault entry %s", entry.id)
            raise
        return CredentialRecord(
            id=entry.id,
            title=entry.title,
            username=entry.username,
            password=password,
            url=entry.url,
            notes=notes,
            category=entry.category,
            created_at=entry.created_at,
            updated_at=entry.updated_at,
        )

    def _commit(self, action: str) -> None:
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception("Vault %s failed", action)
            raise StorageError(f"Failed to {action} entry") from e

    # ---------- CRUD ----------
    def create(self, user_id: int, title: str, username: str = "", password: str = "",
               url: str = "", notes: str = "", category: str = DEFAULT_CATEGORY) -> int:
        now = utcnow()
        entry = VaultEntry(
            user_id=user_id,
            title=title or "",
            username=username or "",
            password_ct=self.crypto.encrypt_text(password or ""),
            url=url or "",
            notes_ct=self._seal_notes(notes or ""),
            category=category or DEFAULT_CATEGORY,
            created_at=now,
            updated_at=now,
        )
        db.session.add(entry)
        self._commit("create")
        return entry.id

    def list(self, user_id: int, category: Optional[str] = None,
             search: Optional[str] = None) -> List[CredentialRecord]:
        query = self._owned(user_id)

        if category and category != ALL_CATEGORIES:
            query = query.filter(VaultEntry.category == category)

        if search:
            query = query.filter(or_(
                VaultEntry.title.icontains(search, autoescape=True),
                VaultEntry.username.icontains(search, autoescape=True),
                VaultEntry.url.icontains(search, autoescape=True),
            ))

        try:
            entries = query.order_by(VaultEntry.updated_at.desc(), VaultEntry.id.desc()).all()
        except SQLAlchemyError as e:
            logger.exception("Vault list failed")
            raise StorageError("Failed to load entries") from e
        return [self._open(entry) for entry in entries]

    def get(self, user_id: int, entry_id: int) -> CredentialRecord:
        entry = self._owned(user_id).filter(VaultEntry.id == entry_id).first()
        if entry is None:
            raise NotFoundOrForbidden()
        return self._open(entry)

    def update(self, user_id: int, entry_id: int, changes: EntryUpdate) -> bool:
        entry = self._owned(user_id).filter(VaultEntry.id == entry_id).first()
        if entry is None:
            return False

        present = changes.present()
        if not present:
            return False

        for name in ("title", "username", "url", "category"):
            if name in present:
                setattr(entry, name, present[name])
        if "password" in present:
            entry.password_ct = self.crypto.encrypt_text(present["password"])
        if "notes" in present:
            entry.notes_ct = self._seal_notes(present["notes"])

        entry.updated_at = utcnow()
        self._commit("update")
        return True

    def delete(self, user_id: int, entry_id: int) -> bool:
        deleted = self._owned(user_id).filter(VaultEntry.id == entry_id).delete()
        self._commit("delete")
        return deleted > 0

    # ---------- Aggregates ----------
    def categories(self, user_id: int) -> List[str]:
        rows = (self._owned(user_id, VaultEntry.category)
                .distinct()
                .order_by(VaultEntry.category)
                .all())
        return [row[0] for row in rows]

    def count_by_category(self, user_id: int) -> List[Tuple[str, int]]:
        rows = (self._owned(user_id, VaultEntry.category, func.count(VaultEntry.id))
                .group_by(VaultEntry.category)
                .order_by(VaultEntry.category)
                .all())
        return [(category, count) for category, count in rows]

    def total_count(self, user_id: int) -> int:
        return self._owned(user_id, func.count(VaultEntry.id)).scalar() or 0
