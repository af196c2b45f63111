"""
Domain models for AI Digest.
These are the canonical records, independent of database/API representation.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Enums
# =============================================================================

class SourceType(str, Enum):
    """Sources from which content is collected."""
    ARXIV = "arxiv"
    GITHUB = "github"
    RSS = "rss"
    STACKOVERFLOW = "stackoverflow"
    PAPERS_WITH_CODE = "papers_with_code"
    SOCIAL = "social"
    VIDEO = "video"
    WEB = "web"

    @classmethod
    def parse(cls, name: str) -> "SourceType":
        """Accept CLI spellings such as ``papers-with-code``."""
        return cls(name.strip().lower().replace("-", "_"))


class QuestionStatus(str, Enum):
    """Lifecycle of a Stack Overflow question, derived from source data."""
    UNANSWERED = "unanswered"
    ANSWERED = "answered"
    ACCEPTED = "accepted"

    @classmethod
    def resolve(cls, answer_count: int, accepted_answer_id: Any = None) -> "QuestionStatus":
        if accepted_answer_id:
            return cls.ACCEPTED
        if answer_count and answer_count > 0:
            return cls.ANSWERED
        return cls.UNANSWERED


# =============================================================================
# Tags
# =============================================================================

class StructuredTag(BaseModel):
    """A tag that carries a scheme alongside its term (Atom categories)."""
    term: str
    scheme: Optional[str] = None


Tag = Union[str, StructuredTag]


def tag_text(tag: Tag) -> str:
    """Plain-text form of a tag."""
    if isinstance(tag, StructuredTag):
        return tag.term
    return tag


# =============================================================================
# Article
# =============================================================================

TITLE_MAX = 1000
SUMMARY_MAX = 5000
CATEGORY_MAX = 100

DEFAULT_CATEGORY = "其他"
UNKNOWN_AUTHOR = "未知作者"


def truncate(value: str, limit: int) -> str:
    """Cut ``value`` to ``limit`` characters, ending with an ellipsis."""
    if len(value) <= limit:
        return value
    return value[: limit - 3] + "..."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Article(BaseModel):
    """Canonical, persisted content record."""
    id: str
    content_id: str
    checksum: str
    title: str
    summary: str = ""
    author: str = UNKNOWN_AUTHOR
    category: str = DEFAULT_CATEGORY
    tags: list[Tag] = Field(default_factory=list)
    source_url: str
    source_type: SourceType
    publish_time: datetime = Field(default_factory=utcnow)

    views: int = 0
    likes: int = 0
    is_new: bool = True
    is_hot: bool = False
    is_mock_data: bool = False

    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("title")
    @classmethod
    def truncate_title(cls, v: str) -> str:
        return truncate(v, TITLE_MAX)

    @field_validator("summary")
    @classmethod
    def truncate_summary(cls, v: str) -> str:
        return truncate(v, SUMMARY_MAX)

    @field_validator("category")
    @classmethod
    def truncate_category(cls, v: str) -> str:
        return truncate(v or DEFAULT_CATEGORY, CATEGORY_MAX)

    @field_validator("publish_time")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @property
    def tag_names(self) -> list[str]:
        return [tag_text(t) for t in self.tags]

    def to_record(self) -> dict[str, Any]:
        """Flat row representation shared by the stores."""
        return {
            "id": self.id,
            "content_id": self.content_id,
            "checksum": self.checksum,
            "title": self.title,
            "summary": self.summary,
            "author": self.author,
            "category": self.category,
            "tags": self.tag_names,
            "source_url": self.source_url,
            "source_type": self.source_type.value,
            "publish_time": self.publish_time.isoformat(),
            "views": self.views,
            "likes": self.likes,
            "is_new": self.is_new,
            "is_hot": self.is_hot,
            "is_mock_data": self.is_mock_data,
            "metadata": self.metadata,
        }
