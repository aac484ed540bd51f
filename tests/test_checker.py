"""
Tests for fleetpkg.updates.checker module.

Tests publisher endpoint parsing including:
- JSONPath extraction of version and download URL
- CSS selectors for HTML release pages
- Regex fallbacks for JSON fields and plain text
- HTTP failures and responses without a version
"""

from __future__ import annotations

import pytest
import requests_mock

from fleetpkg.exceptions import ConfigError, NetworkError
from fleetpkg.updates.checker import UpdateChecker, extract_download_url, extract_version

CHECK_URL = "https://api.example.com/vlc/latest"


class TestExtraction:
    def test_jsonpath_version(self):
        body = '{"release": {"version": "3.0.21", "tag": "v3.0.21"}}'

        assert extract_version(body, "$.release.tag") == "v3.0.21"

    def test_version_field_fallback(self):
        body = '{"name": "VLC", "version": "3.0.21"}'

        assert extract_version(body, "$.missing") == "3.0.21"

    def test_plain_text_version(self):
        assert extract_version("Latest release: 24.08.1.2 (stable)") == "24.08.1.2"

    def test_no_version(self):
        assert extract_version("nothing to see") is None

    def test_download_url_jsonpath(self):
        body = '{"assets": [{"browser_download_url": "https://cdn.example.com/a.msi"}]}'

        assert (
            extract_download_url(body, "$.assets[0].browser_download_url")
            == "https://cdn.example.com/a.msi"
        )

    def test_download_url_field_fallback(self):
        body = '{"version": "2.0", "downloadUrl": "https://cdn.example.com/b.msi"}'

        assert extract_download_url(body) == "https://cdn.example.com/b.msi"

    def test_download_url_defaults_to_fallback(self):
        assert extract_download_url("2.0", None, "https://old.example.com/a.msi") == (
            "https://old.example.com/a.msi"
        )

    def test_invalid_jsonpath(self):
        with pytest.raises(ConfigError, match="Invalid JSONPath"):
            extract_version('{"version": "1.0"}', "$[")


class TestUpdateChecker:
    def test_fetch(self, make_entry):
        entry = make_entry(
            update_check_url=CHECK_URL,
            update_version_path="$.latest.version",
            update_download_url_path="$.latest.url",
        )

        with requests_mock.Mocker() as m:
            m.get(
                CHECK_URL,
                json={"latest": {"version": "3.0.21", "url": "https://cdn.example.com/vlc.msi"}},
            )
            remote = UpdateChecker(timeout=5).fetch(entry)

        assert remote.version == "3.0.21"
        assert remote.download_url == "https://cdn.example.com/vlc.msi"

    def test_no_check_url(self, make_entry):
        assert UpdateChecker().fetch(make_entry()) is None

    def test_http_error(self, make_entry):
        entry = make_entry(update_check_url=CHECK_URL)

        with requests_mock.Mocker() as m:
            m.get(CHECK_URL, status_code=404, reason="Not Found")
            with pytest.raises(NetworkError, match="404 Not Found"):
                UpdateChecker().fetch(entry)

    def test_missing_version(self, make_entry):
        entry = make_entry(update_check_url=CHECK_URL)

        with requests_mock.Mocker() as m:
            m.get(CHECK_URL, text="<html>maintenance</html>")
            with pytest.raises(NetworkError, match="No version found"):
                UpdateChecker().fetch(entry)


class TestHtmlExtraction:
    PAGE = """
    <html><body>
      <h1>Downloads</h1>
      <p>Current release: <span class="release-version">Version 24.08 (2024-08-11)</span></p>
      <a class="download-msi" href="/files/app-24.08-x64.msi">MSI</a>
    </body></html>
    """

    def test_css_version(self):
        assert extract_version(self.PAGE, "span.release-version") == "24.08"

    def test_css_download_url_resolved(self):
        url = extract_download_url(
            self.PAGE, "a.download-msi", base_url="https://www.example.org/downloads.html"
        )

        assert url == "https://www.example.org/files/app-24.08-x64.msi"

    def test_unmatched_selector_falls_back(self):
        assert extract_version(self.PAGE, "div.missing") is None
        assert extract_download_url(self.PAGE, "div.missing", "https://old.example.com/a.msi") == (
            "https://old.example.com/a.msi"
        )

    def test_invalid_selector(self):
        with pytest.raises(ConfigError, match="Invalid CSS selector"):
            extract_version(self.PAGE, "a[href")

    def test_fetch_html_page(self, make_entry):
        page_url = "https://www.example.org/downloads.html"
        entry = make_entry(
            update_check_url=page_url,
            update_version_path="span.release-version",
            update_download_url_path="a.download-msi",
        )

        with requests_mock.Mocker() as m:
            m.get(page_url, text=self.PAGE)
            remote = UpdateChecker().fetch(entry)

        assert remote.version == "24.08"
        assert remote.download_url == "https://www.example.org/files/app-24.08-x64.msi"
