"""Remote XML feeds: CiscoIPPhoneDirectory documents served over HTTP."""

from urllib.parse import urlparse

import requests
from loguru import logger

from teldirectory.config import FEED_TIMEOUT
from teldirectory.core.documents.cisco_xml import parse_directory_document
from teldirectory.errors import SchemaError
from teldirectory.models.directory import ExtensionRecord
from teldirectory.protocols import FeedSession

NO_CACHE_HEADERS = {"Cache-Control": "no-cache", "Pragma": "no-cache"}


def parse_feed_urls(text: str) -> list[str]:
    """Split newline-separated feed URLs, dropping blanks and anything that is not
    an absolute http(s) URL. Duplicates keep their first position."""
    urls: dict[str, None] = {}
    for line in text.splitlines():
        url = line.strip()
        if not url:
            continue
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            logger.warning("Ignoring invalid feed URL {!r}", url)
            continue
        urls[url] = None
    return list(urls)


def new_feed_session() -> requests.Session:
    sess = requests.Session()
    sess.headers.update(NO_CACHE_HEADERS)
    return sess


def fetch_feed(
    session: FeedSession, url: str, *, timeout: float = FEED_TIMEOUT
) -> list[ExtensionRecord]:
    """Fetch one feed and turn each directory entry into a record sourced from url.

    Raises:
        requests.RequestException: The feed could not be fetched.
        SchemaError: The body is not a CiscoIPPhoneDirectory.
    """
    logger.debug("Fetching feed {}", url)
    response = session.get(url, timeout=timeout, headers=NO_CACHE_HEADERS)
    response.raise_for_status()
    doc = parse_directory_document(response.content)
    return [
        ExtensionRecord(number=entry.telephone, name=entry.name, source_id=url)
        for entry in doc.entries
    ]


def fetch_feed_records(
    urls: list[str],
    session: FeedSession | None = None,
    *,
    timeout: float = FEED_TIMEOUT,
) -> tuple[list[ExtensionRecord], list[str]]:
    """Fetch feeds one after another.

    An unreachable or malformed feed is logged and skipped; the rest still count.

    Returns:
        (records from every feed that worked, urls of feeds that failed)
    """
    session = session or new_feed_session()
    records: list[ExtensionRecord] = []
    failed: list[str] = []
    for url in urls:
        try:
            feed_records = fetch_feed(session, url, timeout=timeout)
        except requests.RequestException as e:
            logger.warning("Failed to fetch feed {}: {}", url, e)
            failed.append(url)
            continue
        except SchemaError as e:
            logger.warning("Feed {} is not a valid directory: {}", url, e)
            failed.append(url)
            continue
        logger.info("Found {} entries in feed {}", len(feed_records), url)
        records += feed_records
    return records, failed
