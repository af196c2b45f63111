"""
Content identity: canonical URLs, dedup keys and change checksums.
"""

import hashlib
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

# Query parameters that never change what a URL points to
TRACKING_PARAMS = frozenset({
    "ref", "ref_src", "ref_url", "source", "fbclid", "gclid", "dclid",
    "mc_cid", "mc_eid", "igshid", "spm", "_hsenc", "_hsmi", "yclid",
})


def _is_tracking(param: str) -> bool:
    key = param.lower()
    return key.startswith("utm_") or key in TRACKING_PARAMS


def canonicalize_url(url: str) -> str:
    """
    Normalize a URL so equivalent links compare equal.

    Lowercases scheme and host, drops the fragment and tracking parameters,
    sorts the remaining query and strips a trailing slash from the path.
    """
    url = url.strip()
    parsed = urlparse(url)
    if not parsed.scheme and not parsed.netloc:
        return url.rstrip("/")

    query = [
        (k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking(k)
    ]
    query.sort()

    path = parsed.path.rstrip("/") if parsed.path != "/" else ""

    return urlunparse((
        parsed.scheme.lower(),
        parsed.netloc.lower(),
        path,
        parsed.params,
        urlencode(query),
        "",
    ))


def content_id(source_type: str, url: str) -> str:
    """Stable dedup key: ``<source>_`` plus 128 bits of sha256(source + canonical url)."""
    source = getattr(source_type, "value", source_type)
    digest = hashlib.sha256(f"{source}{canonicalize_url(url)}".encode("utf-8")).hexdigest()
    return f"{source}_{digest[:32]}"


def checksum(title: str, summary: str) -> str:
    """Fingerprint of the user-visible content."""
    return hashlib.sha256(f"{title}{summary or ''}".encode("utf-8")).hexdigest()
