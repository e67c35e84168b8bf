"""
Tests for rewriting source references relative to the map's file.
"""

import pytest

from plugins.optimize.paths import PathNormalizer, ensure_relative, is_url, normalize, relative_reference

ANCHOR = "/site/assets/js/app.js"


class TestPathNormalizer:
    """Normalizing the `sources` of a mapping."""

    @pytest.mark.parametrize(
        "source, expected",
        [
            ("app.ts", "./app.ts"),
            ("./app.ts", "./app.ts"),
            ("../../src/app.ts", "../../src/app.ts"),
            ("/site/src/app.ts", "../../src/app.ts"),
            ("/site/assets/js/lib/util.js", "./lib/util.js"),
            ("lib/../app.ts", "./app.ts"),
            ("..\\..\\src\\app.ts", "../../src/app.ts"),
        ],
    )
    def test_paths_become_relative(self, source, expected):
        """Test: filesystem paths are rewritten relative to the anchor's directory."""
        assert normalize([source], ANCHOR) == [expected]

    @pytest.mark.parametrize(
        "source",
        ["https://example.com/app.ts", "webpack:///src/app.ts", "//cdn.example.com/app.js", "data:text/plain,x"],
    )
    def test_urls_untouched(self, source):
        """Test: URLs and protocol-relative references are left as they are."""
        assert normalize([source], ANCHOR) == [source]

    def test_empty_sources_fallback(self):
        """Test: a mapping without sources gets the anchor's own name."""
        assert normalize([], ANCHOR) == ["./app.js"]

    def test_empty_source_entry(self):
        """Test: a blank source entry gets the anchor's own name."""
        assert normalize(["", "a.ts"], ANCHOR) == ["./app.js", "./a.ts"]

    def test_mounted_base_url(self):
        """Test: references under the serving URL prefix are mounted back inside the build root."""
        normalizer = PathNormalizer(build_root="/site", base_url="/")
        assert normalizer.normalize(["/_dist_/app.ts"], ANCHOR) == ["../../_dist_/app.ts"]

    def test_mounted_absolute_url(self):
        """Test: an absolute URL prefix can be mounted too."""
        normalizer = PathNormalizer(build_root="/site", base_url="https://cdn.example.com/static/")
        assert normalizer.normalize(["https://cdn.example.com/static/src/app.ts"], ANCHOR) == ["../../src/app.ts"]
        assert normalizer.normalize(["https://other.example.com/app.ts"], ANCHOR) == ["https://other.example.com/app.ts"]

    def test_absolute_paths_without_mount(self):
        """Test: without a base_url an absolute path stays a filesystem path."""
        normalizer = PathNormalizer(build_root="/site")
        assert normalizer.normalize(["/site/assets/app.ts"], ANCHOR) == ["../app.ts"]

    @pytest.mark.parametrize(
        "sources",
        [[], ["app.ts", "/site/x.ts", "https://a/b.js"], ["..\\x.ts", "", "./y.ts"], ["/_dist_/a.ts"]],
    )
    def test_idempotent(self, sources):
        """Test: normalizing twice gives the same result as once."""
        normalizer = PathNormalizer(build_root="/site", base_url="/")
        once = normalizer.normalize(sources, ANCHOR)
        assert normalizer.normalize(once, ANCHOR) == once


class TestHelpers:
    """Small path helpers."""

    def test_ensure_relative(self):
        """Test: bare names get `./`, relative prefixes are kept."""
        assert ensure_relative("a.js") == "./a.js"
        assert ensure_relative(".hidden/a.js") == "./.hidden/a.js"
        assert ensure_relative("../a.js") == "../a.js"

    def test_is_url(self):
        """Test: Windows drive letters are not URL schemes."""
        assert is_url("https://x")
        assert not is_url("C:/src/app.ts")
        assert not is_url("src/app.ts")

    def test_relative_reference(self):
        """Test: the map next to an asset is referenced with `./`."""
        assert relative_reference("/site/js/app.js.map", "/site/js/app.js") == "./app.js.map"
