"""Tests for remote XML feed fetching."""

import pytest
import requests

from teldirectory.core.sources.feed_source import (
    NO_CACHE_HEADERS,
    fetch_feed,
    fetch_feed_records,
    new_feed_session,
    parse_feed_urls,
)
from teldirectory.errors import SchemaError
from teldirectory.models.directory import ExtensionRecord
from tests.unit.fakes import FakeSession, directory_xml

FEED_A = "http://feeds-a.example/dir.xml"
FEED_B = "https://feeds-b.example/dir.xml"


def test_parse_feed_urls_filters_and_dedupes() -> None:
    text = f"""
    {FEED_A}
    ftp://files.example/dir.xml
    not a url
    {FEED_B}
    {FEED_A}
    """

    assert parse_feed_urls(text) == [FEED_A, FEED_B]


def test_new_feed_session_disables_caching() -> None:
    sess = new_feed_session()

    assert sess.headers["Cache-Control"] == "no-cache"


def test_fetch_feed_tags_records_with_url() -> None:
    session = FakeSession()
    session.add_feed(FEED_A, directory_xml(("Alice", "100"), ("Bob", "101")))

    records = fetch_feed(session, FEED_A, timeout=5)

    assert records == [
        ExtensionRecord("100", "Alice", FEED_A),
        ExtensionRecord("101", "Bob", FEED_A),
    ]
    assert session.calls == [(FEED_A, {"timeout": 5, "headers": NO_CACHE_HEADERS})]


def test_fetch_feed_rejects_menu_body() -> None:
    session = FakeSession()
    session.add_feed(FEED_A, b"<CiscoIPPhoneMenu/>")

    with pytest.raises(SchemaError):
        fetch_feed(session, FEED_A)


def test_fetch_feed_raises_on_http_error() -> None:
    session = FakeSession()
    session.add_feed(FEED_A, b"", status_code=503)

    with pytest.raises(requests.HTTPError):
        fetch_feed(session, FEED_A)


def test_fetch_feed_records_skips_failed_feeds() -> None:
    session = FakeSession()
    session.add_feed(FEED_A, directory_xml(("Alice", "100")))
    session.add_feed(FEED_B, b"<html>maintenance</html>")
    unreachable = "http://down.example/dir.xml"

    records, failed = fetch_feed_records([FEED_A, FEED_B, unreachable], session)

    assert records == [ExtensionRecord("100", "Alice", FEED_A)]
    assert failed == [FEED_B, unreachable]
    assert [url for url, _ in session.calls] == [FEED_A, FEED_B, unreachable]
