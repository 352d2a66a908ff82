"""Unit tests for LiveRC results URL parsing."""

import pytest

from liverc_etl.errors import UrlParseError
from liverc_etl.url_parser import (
    EMPTY_SLUG,
    EXTRA_SEGMENTS,
    INCOMPLETE_RESULTS_SEGMENTS,
    INVALID_ABSOLUTE_URL,
    INVALID_RESULTS_PATH,
    UNSUPPORTED_HTML_URL,
    HtmlResultsUrl,
    InvalidUrl,
    JsonResultsUrl,
    parse_provider_url,
    require_json_results_url,
)


# ---------------------------------------------------------------------------
# parse_provider_url: JSON results
# ---------------------------------------------------------------------------

class TestParseJsonResultsUrl:
    URL = "https://live.liverc.com/results/2025-club-champs/pro-buggy/a-main/race-1.json"

    def test_extracts_four_slugs(self):
        ref = parse_provider_url(self.URL)
        assert isinstance(ref, JsonResultsUrl)
        assert ref.slugs == ("2025-club-champs", "pro-buggy", "a-main", "race-1")
        assert ref.event_slug == "2025-club-champs"
        assert ref.race_slug == "race-1"

    def test_canonical_path_and_base(self):
        ref = parse_provider_url(self.URL)
        assert ref.canonical_json_path == "/results/2025-club-champs/pro-buggy/a-main/race-1.json"
        assert ref.results_base_url == "https://live.liverc.com/results"
        assert ref.origin == "https://live.liverc.com"
        assert ref.canonical_json_url == self.URL

    def test_json_suffix_optional(self):
        ref = parse_provider_url(self.URL[: -len(".json")])
        assert isinstance(ref, JsonResultsUrl)
        assert ref.canonical_json_path.endswith("/race-1.json")

    def test_json_suffix_case_insensitive(self):
        ref = parse_provider_url(self.URL[: -len(".json")] + ".JSON")
        assert isinstance(ref, JsonResultsUrl)
        assert ref.race_slug == "race-1"

    def test_percent_decoded_segments(self):
        ref = parse_provider_url(
            "https://live.liverc.com/results/club%20champs/pro/a-main/race-1.json"
        )
        assert isinstance(ref, JsonResultsUrl)
        assert ref.event_slug == "club champs"

    def test_host_lowercased_and_whitespace_trimmed(self):
        ref = parse_provider_url("  https://Live.LiveRC.com/results/e/c/r/x.json  ")
        assert isinstance(ref, JsonResultsUrl)
        assert ref.origin == "https://live.liverc.com"

    def test_nested_results_prefix_kept(self):
        ref = parse_provider_url("https://example.com/api/results/e/c/r/x.json")
        assert isinstance(ref, JsonResultsUrl)
        assert ref.results_base_url == "https://example.com/api/results"
        assert ref.canonical_json_path == "/api/results/e/c/r/x.json"


# ---------------------------------------------------------------------------
# parse_provider_url: legacy HTML and invalid inputs
# ---------------------------------------------------------------------------

class TestParseOtherUrls:
    def test_legacy_html_page(self):
        ref = parse_provider_url("https://club.liverc.com/results/?p=view_race_result&id=12345")
        assert isinstance(ref, HtmlResultsUrl)
        assert ref.result_id == "12345"

    @pytest.mark.parametrize("url", ["", "not a url", "/results/e/c/r/x.json", "ftp://x.com/results/e/c/r/x"])
    def test_not_absolute(self, url):
        ref = parse_provider_url(url)
        assert isinstance(ref, InvalidUrl)
        assert ref.reason == INVALID_ABSOLUTE_URL

    def test_missing_results_segment(self):
        ref = parse_provider_url("https://live.liverc.com/events/e/c/r/x.json")
        assert ref.reason == INVALID_RESULTS_PATH

    def test_too_few_segments(self):
        ref = parse_provider_url("https://live.liverc.com/results/e/c/r")
        assert ref.reason == INCOMPLETE_RESULTS_SEGMENTS

    def test_too_many_segments(self):
        ref = parse_provider_url("https://live.liverc.com/results/e/c/r/x/extra.json")
        assert ref.reason == EXTRA_SEGMENTS

    def test_race_segment_only_suffix(self):
        ref = parse_provider_url("https://live.liverc.com/results/e/c/r/.json")
        assert ref.reason == EMPTY_SLUG

    def test_invalid_carries_message(self):
        ref = parse_provider_url("https://live.liverc.com/results/e/c/r")
        assert "event, class, round, and race" in ref.message


# ---------------------------------------------------------------------------
# require_json_results_url
# ---------------------------------------------------------------------------

class TestRequireJsonResultsUrl:
    def test_returns_json_variant(self):
        ref = require_json_results_url("https://live.liverc.com/results/e/c/r/x.json")
        assert ref.slugs == ("e", "c", "r", "x")

    def test_html_url_rejected(self):
        with pytest.raises(UrlParseError) as exc_info:
            require_json_results_url("https://club.liverc.com/results/?p=view_race_result&id=9")
        assert exc_info.value.reason == UNSUPPORTED_HTML_URL

    def test_invalid_url_raises_with_reason(self):
        with pytest.raises(UrlParseError) as exc_info:
            require_json_results_url("https://live.liverc.com/results/e/c")
        assert exc_info.value.reason == INCOMPLETE_RESULTS_SEGMENTS
        assert exc_info.value.url == "https://live.liverc.com/results/e/c"
