"""
Normalizer - maps source-specific RawItems onto the canonical Article.

Pure functions only: no I/O, no clock other than the fallback publish time
and the process-unique article id.
"""

import html
import re
import time
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Optional

from aidigest.models.domain import (
    TITLE_MAX,
    UNKNOWN_AUTHOR,
    Article,
    QuestionStatus,
    SourceType,
    StructuredTag,
    Tag,
    truncate,
)
from aidigest.services.ingestion.errors import ValidationError
from aidigest.services.ingestion.identity import checksum, content_id
from aidigest.services.ingestion.base import RawItem

# Display budget for summaries, per source
SUMMARY_LIMITS = {
    SourceType.RSS: 500,
    SourceType.PAPERS_WITH_CODE: 500,
    SourceType.STACKOVERFLOW: 200,
}
DEFAULT_SUMMARY_LIMIT = 5000

DEFAULT_CATEGORIES = {
    SourceType.ARXIV: "学术论文",
    SourceType.GITHUB: "GitHub项目",
    SourceType.RSS: "技术博客",
    SourceType.STACKOVERFLOW: "Stack Overflow",
    SourceType.PAPERS_WITH_CODE: "ML论文",
    SourceType.SOCIAL: "社交媒体",
    SourceType.VIDEO: "视频",
    SourceType.WEB: "行业资讯",
}

_TAG_KEYS = ("term", "@_term", "label", "@_label", "name", "#text")
_SCHEME_KEYS = ("scheme", "@_scheme")


# =============================================================================
# Helpers
# =============================================================================

def clean_html(text: Optional[str]) -> str:
    """Strip tags, decode entities and collapse whitespace."""
    if not text:
        return ""
    clean = re.sub(r"<[^>]+>", " ", text)
    clean = html.unescape(clean)
    return " ".join(clean.split())


def coerce_tag(value: Any) -> Optional[Tag]:
    """
    Turn whatever a feed gave us into a Tag.

    Plain strings and StructuredTags pass through; mappings (XML-derived
    ``{"@_term": "cs.AI"}`` shapes) become StructuredTags using the first
    usable string value.
    """
    if isinstance(value, StructuredTag):
        return value
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, Mapping):
        term = None
        for key in _TAG_KEYS:
            candidate = value.get(key)
            if isinstance(candidate, str) and candidate.strip():
                term = candidate.strip()
                break
        if term is None:
            term = next(
                (v.strip() for v in value.values() if isinstance(v, str) and v.strip()),
                None,
            )
        if term is None:
            return None
        scheme = next((value[k] for k in _SCHEME_KEYS if isinstance(value.get(k), str)), None)
        return StructuredTag(term=term, scheme=scheme)
    return None


def coerce_tags(values: Any) -> list[Tag]:
    if values is None:
        return []
    if isinstance(values, (str, Mapping, StructuredTag)):
        values = [values]
    tags = []
    for value in values:
        tag = coerce_tag(value)
        if tag is not None:
            tags.append(tag)
    return tags


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO-8601, RFC 822 or epoch-seconds values into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value).strip()
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            try:
                dt = parsedate_to_datetime(text)
            except (TypeError, ValueError):
                return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def new_article_id(source: str) -> str:
    """Process-unique id; the dedup key is content_id, not this."""
    return f"{source}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


# =============================================================================
# Per-source field mapping
# =============================================================================
# Each mapper returns the Article fields that differ by source; the shared
# pieces (ids, checksum, truncation, defaults) are filled by normalize().

def _map_arxiv(f: dict) -> dict:
    authors = f.get("authors") or []
    return {
        "title": f.get("title"),
        "summary": clean_html(f.get("summary")),
        "author": ", ".join(authors),
        "category": f.get("category_label"),
        "tags": coerce_tags(f.get("categories")),
        "publish_time": f.get("published"),
        "metadata": {
            "arxiv_id": f.get("arxiv_id"),
            "authors": authors,
            "primary_category": f.get("primary_category"),
            "pdf_url": f.get("pdf_url"),
            "doi": f.get("doi"),
            "journal_ref": f.get("journal_ref"),
            "comment": f.get("comment"),
            "updated": f.get("updated"),
        },
    }


def _map_github(f: dict) -> dict:
    owner = f.get("owner") or {}
    license_info = f.get("license") or {}
    stars = _int(f.get("stargazers_count"))
    metadata = {
        "full_name": f.get("full_name"),
        "stars": stars,
        "forks": _int(f.get("forks_count")),
        "watchers": _int(f.get("watchers_count")),
        "open_issues": _int(f.get("open_issues_count")),
        "language": f.get("language"),
        "license": license_info.get("name"),
        "owner": {
            "login": owner.get("login"),
            "id": owner.get("id"),
            "avatar_url": owner.get("avatar_url"),
            "type": owner.get("type"),
        },
        "created_at": f.get("created_at"),
        "updated_at": f.get("updated_at"),
        "pushed_at": f.get("pushed_at"),
    }
    for extra in ("readme", "recent_commits", "latest_release"):
        if f.get(extra) is not None:
            metadata[extra] = f[extra]
    return {
        "title": f.get("full_name") or f.get("name"),
        "summary": f.get("description") or "",
        "author": owner.get("login"),
        "tags": coerce_tags(f.get("topics")),
        "publish_time": f.get("pushed_at") or f.get("updated_at") or f.get("created_at"),
        "likes": stars,
        "metadata": metadata,
    }


def _map_rss(f: dict) -> dict:
    return {
        "title": clean_html(f.get("title")),
        "summary": clean_html(f.get("description")),
        "author": f.get("author") or f.get("feed_name"),
        "category": f.get("feed_category"),
        "tags": coerce_tags(f.get("categories")),
        "publish_time": f.get("pub_date"),
        "metadata": {
            "feed_name": f.get("feed_name"),
            "feed_url": f.get("feed_url"),
            "guid": f.get("guid"),
        },
    }


def _map_stackoverflow(f: dict) -> dict:
    owner = f.get("owner") or {}
    status = QuestionStatus.resolve(_int(f.get("answer_count")), f.get("accepted_answer_id"))
    return {
        "title": clean_html(f.get("title")),
        "summary": clean_html(f.get("body") or f.get("excerpt")),
        "author": owner.get("display_name"),
        "tags": coerce_tags(f.get("tags")),
        "publish_time": f.get("creation_date"),
        "views": _int(f.get("view_count")),
        "likes": _int(f.get("score")),
        "metadata": {
            "question_id": f.get("question_id"),
            "score": _int(f.get("score")),
            "answer_count": _int(f.get("answer_count")),
            "favorite_count": _int(f.get("favorite_count")),
            "is_answered": bool(f.get("is_answered")),
            "accepted_answer_id": f.get("accepted_answer_id"),
            "status": status.value,
            "owner_reputation": owner.get("reputation"),
        },
    }


def _map_papers_with_code(f: dict) -> dict:
    authors = f.get("authors") or []
    return {
        "title": clean_html(f.get("title")),
        "summary": clean_html(f.get("abstract")),
        "author": ", ".join(authors),
        "tags": coerce_tags(f.get("tasks")),
        "publish_time": f.get("published"),
        "likes": _int(f.get("stars")),
        "metadata": {
            "authors": authors,
            "venue": f.get("venue"),
            "code_links": f.get("code_links") or [],
            "stars": _int(f.get("stars")),
        },
    }


def _map_social(f: dict) -> dict:
    text = clean_html(f.get("text"))
    return {
        "title": f.get("title") or truncate(text, 100),
        "summary": text,
        "author": f.get("author_name") or f.get("author"),
        "tags": coerce_tags(f.get("hashtags")),
        "publish_time": f.get("created_at"),
        "likes": _int(f.get("likes")),
        "metadata": {
            "platform": f.get("platform"),
            "post_id": f.get("id"),
            "username": f.get("author"),
            "retweets": _int(f.get("retweets")),
            "replies": _int(f.get("replies")),
        },
    }


def _map_video(f: dict) -> dict:
    return {
        "title": clean_html(f.get("title")),
        "summary": clean_html(f.get("description")),
        "author": f.get("channel"),
        "tags": coerce_tags(f.get("tags")),
        "publish_time": f.get("published_at"),
        "views": _int(f.get("view_count")),
        "likes": _int(f.get("like_count")),
        "metadata": {
            "platform": f.get("platform"),
            "video_id": f.get("video_id"),
            "duration_seconds": f.get("duration_seconds"),
            "thumbnail": f.get("thumbnail"),
        },
    }


def _map_web(f: dict) -> dict:
    return {
        "title": clean_html(f.get("title")),
        "summary": clean_html(f.get("summary")),
        "author": f.get("author") or f.get("site"),
        "category": f.get("site_category"),
        "tags": coerce_tags(f.get("tags")),
        "publish_time": f.get("published"),
        "metadata": {"site": f.get("site")},
    }


MAPPERS: dict[SourceType, Callable[[dict], dict]] = {
    SourceType.ARXIV: _map_arxiv,
    SourceType.GITHUB: _map_github,
    SourceType.RSS: _map_rss,
    SourceType.STACKOVERFLOW: _map_stackoverflow,
    SourceType.PAPERS_WITH_CODE: _map_papers_with_code,
    SourceType.SOCIAL: _map_social,
    SourceType.VIDEO: _map_video,
    SourceType.WEB: _map_web,
}


# =============================================================================
# Entry point
# =============================================================================

def normalize(
    raw: RawItem,
    source_type: Optional[SourceType] = None,
    category: Optional[str] = None,
) -> Article:
    """
    Map one RawItem to an Article.

    Args:
        raw: Fetched item
        source_type: Overrides ``raw.source_type`` when given
        category: Overrides the source's default category

    Raises:
        ValidationError: the item has no URL or no title
    """
    source = SourceType(source_type or raw.source_type)
    mapped = MAPPERS[source](raw.fields or {})

    title = (mapped.get("title") or "").strip()
    url = (raw.url or "").strip()
    if not url:
        raise ValidationError(f"{source.value} item has no URL: {title[:80]!r}")
    if not title:
        raise ValidationError(f"{source.value} item has no title: {url}")
    title = truncate(title, TITLE_MAX)

    summary = truncate(
        mapped.get("summary") or "",
        SUMMARY_LIMITS.get(source, DEFAULT_SUMMARY_LIMIT),
    )
    publish_time = (
        raw.published_at
        or parse_datetime(mapped.get("publish_time"))
        or raw.fetched_at
    )

    metadata = {k: v for k, v in mapped.get("metadata", {}).items() if v is not None}

    return Article(
        id=new_article_id(source.value),
        content_id=content_id(source.value, url),
        checksum=checksum(title, summary),
        title=title,
        summary=summary,
        author=(mapped.get("author") or "").strip() or UNKNOWN_AUTHOR,
        category=category or mapped.get("category") or DEFAULT_CATEGORIES[source],
        tags=mapped.get("tags", []),
        source_url=url,
        source_type=source,
        publish_time=publish_time,
        views=mapped.get("views", 0),
        likes=mapped.get("likes", 0),
        is_mock_data=raw.is_mock_data,
        metadata=metadata,
    )
