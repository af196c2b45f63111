"""
Tests for content identity: canonical URLs, content ids and checksums.
"""

from aidigest.services.ingestion.identity import canonicalize_url, checksum, content_id


class TestCanonicalizeUrl:
    """Tests for URL canonicalization."""

    def test_strips_tracking_params(self):
        url = "https://example.com/post?id=7&utm_source=twitter&utm_medium=social&fbclid=abc"
        assert canonicalize_url(url) == "https://example.com/post?id=7"

    def test_lowercases_scheme_and_host_only(self):
        assert canonicalize_url("HTTPS://Example.COM/Path/Item") == "https://example.com/Path/Item"

    def test_drops_fragment_and_trailing_slash(self):
        assert canonicalize_url("https://example.com/a/b/#comments") == "https://example.com/a/b"

    def test_sorts_query(self):
        assert canonicalize_url("https://x.org/s?b=2&a=1") == canonicalize_url("https://x.org/s?a=1&b=2")

    def test_root_path(self):
        assert canonicalize_url("https://example.com/") == "https://example.com"


class TestContentId:
    """Tests for the dedup key."""

    def test_stable_across_calls(self):
        url = "https://arxiv.org/abs/2401.12345"
        assert content_id("arxiv", url) == content_id("arxiv", url)

    def test_prefix_and_length(self):
        cid = content_id("github", "https://github.com/org/repo")
        prefix, digest = cid.split("_", 1)
        assert prefix == "github"
        assert len(digest) == 32

    def test_equivalent_urls_share_id(self):
        a = content_id("rss", "https://blog.example.com/post/?utm_campaign=x")
        b = content_id("rss", "https://BLOG.example.com/post")
        assert a == b

    def test_source_type_is_part_of_identity(self):
        url = "https://example.com/item"
        assert content_id("rss", url) != content_id("web", url)

    def test_accepts_enum(self):
        from aidigest.models.domain import SourceType

        url = "https://example.com/item"
        assert content_id(SourceType.WEB, url) == content_id("web", url)


class TestChecksum:
    """Tests for change detection."""

    def test_unchanged_content(self):
        assert checksum("Title", "Body") == checksum("Title", "Body")

    def test_changed_summary(self):
        assert checksum("Title", "Body") != checksum("Title", "Body v2")

    def test_is_sha256_hex(self):
        value = checksum("a", "b")
        assert len(value) == 64
        int(value, 16)
