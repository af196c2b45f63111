"""
Idempotent persistence of normalized articles.

Articles are matched on ``content_id``: an existing row is updated, a new
one inserted. Store failures are classified so the run summary can say
what went wrong and how to fix it.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol

from aidigest.models.domain import Article

logger = logging.getLogger(__name__)

QUERY_TIMEOUT_SECONDS = 10.0
WRITE_TIMEOUT_SECONDS = 15.0

REQUIRED_FIELDS = ("id", "title", "source_url", "source_type", "content_id")

# Fields that belong to the stored row, not to the fetched content
PRESERVED_ON_UPDATE = ("id", "views", "likes", "created_at")


class ArticleStore(Protocol):
    """What the upserter and collector need from a backing store."""

    async def find_by_content_id(self, content_id: str) -> Optional[dict[str, Any]]: ...

    async def insert(self, record: dict[str, Any]) -> None: ...

    async def update(self, content_id: str, record: dict[str, Any]) -> None: ...

    async def list_active_feeds(self) -> list[dict[str, Any]]: ...

    async def set_feed_active(self, url: str, is_active: bool) -> None: ...


class PersistenceErrorKind(str, Enum):
    VALIDATION = "validation"
    UNIQUE_VIOLATION = "unique_violation"
    NOT_NULL_VIOLATION = "not_null_violation"
    FOREIGN_KEY_VIOLATION = "foreign_key_violation"
    PERMISSION_DENIED = "permission_denied"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


HINTS = {
    PersistenceErrorKind.VALIDATION: "Item is missing required fields; check the source mapping.",
    PersistenceErrorKind.UNIQUE_VIOLATION: "Duplicate content_id or id; another writer inserted the same item.",
    PersistenceErrorKind.NOT_NULL_VIOLATION: "A required column was empty; check the normalizer defaults.",
    PersistenceErrorKind.FOREIGN_KEY_VIOLATION: "Referenced row does not exist; check related tables.",
    PersistenceErrorKind.PERMISSION_DENIED: "Permission denied; use SUPABASE_SERVICE_ROLE_KEY or review row-level security.",
    PersistenceErrorKind.TIMEOUT: "Store did not answer in time; check connectivity.",
    PersistenceErrorKind.UNKNOWN: "Unexpected store error; see the log for details.",
}

_CODE_KINDS = {
    "23505": PersistenceErrorKind.UNIQUE_VIOLATION,
    "23502": PersistenceErrorKind.NOT_NULL_VIOLATION,
    "23503": PersistenceErrorKind.FOREIGN_KEY_VIOLATION,
    "42501": PersistenceErrorKind.PERMISSION_DENIED,
    "PGRST116": PersistenceErrorKind.PERMISSION_DENIED,
}

_MESSAGE_KINDS = (
    ("unique constraint", PersistenceErrorKind.UNIQUE_VIOLATION),
    ("duplicate key", PersistenceErrorKind.UNIQUE_VIOLATION),
    ("not null constraint", PersistenceErrorKind.NOT_NULL_VIOLATION),
    ("null value in column", PersistenceErrorKind.NOT_NULL_VIOLATION),
    ("foreign key constraint", PersistenceErrorKind.FOREIGN_KEY_VIOLATION),
    ("permission denied", PersistenceErrorKind.PERMISSION_DENIED),
    ("row-level security", PersistenceErrorKind.PERMISSION_DENIED),
)


def classify_persistence_error(error: BaseException) -> PersistenceErrorKind:
    """Map a store exception onto the taxonomy (Postgres codes first, then message text)."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return PersistenceErrorKind.TIMEOUT

    candidates = [error, getattr(error, "orig", None)]
    for candidate in candidates:
        if candidate is None:
            continue
        for attr in ("code", "pgcode", "sqlstate"):
            code = getattr(candidate, attr, None)
            if code is not None and str(code) in _CODE_KINDS:
                return _CODE_KINDS[str(code)]

    message = str(error).lower()
    for needle, kind in _MESSAGE_KINDS:
        if needle in message:
            return kind
    return PersistenceErrorKind.UNKNOWN


@dataclass
class UpsertResult:
    """Outcome of persisting one article."""
    content_id: str
    action: Optional[str] = None  # "inserted" | "updated"
    content_changed: bool = False
    error: Optional[str] = None
    error_kind: Optional[PersistenceErrorKind] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def hint(self) -> Optional[str]:
        return HINTS.get(self.error_kind) if self.error_kind else None


def missing_required_fields(article: Article) -> list[str]:
    return [name for name in REQUIRED_FIELDS if not getattr(article, name, None)]


class Upserter:
    """Update-or-insert keyed on content_id."""

    def __init__(
        self,
        store: ArticleStore,
        query_timeout: float = QUERY_TIMEOUT_SECONDS,
        write_timeout: float = WRITE_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.query_timeout = query_timeout
        self.write_timeout = write_timeout

    async def upsert(self, article: Article) -> UpsertResult:
        missing = missing_required_fields(article)
        if missing:
            return UpsertResult(
                content_id=article.content_id,
                error=f"Missing required fields: {', '.join(missing)}",
                error_kind=PersistenceErrorKind.VALIDATION,
            )

        record = article.to_record()
        try:
            existing = await asyncio.wait_for(
                self.store.find_by_content_id(article.content_id),
                timeout=self.query_timeout,
            )
            if existing:
                changed = existing.get("checksum") != article.checksum
                update = {k: v for k, v in record.items() if k not in PRESERVED_ON_UPDATE}
                await asyncio.wait_for(
                    self.store.update(article.content_id, update),
                    timeout=self.write_timeout,
                )
                logger.debug(f"Updated {article.content_id} (changed={changed})")
                return UpsertResult(article.content_id, action="updated", content_changed=changed)

            await asyncio.wait_for(self.store.insert(record), timeout=self.write_timeout)
            logger.debug(f"Inserted {article.content_id}")
            return UpsertResult(article.content_id, action="inserted", content_changed=True)

        except Exception as e:
            kind = classify_persistence_error(e)
            logger.warning(f"Failed to save {article.content_id} [{kind.value}]: {e}")
            return UpsertResult(
                content_id=article.content_id,
                error=str(e) or type(e).__name__,
                error_kind=kind,
            )
