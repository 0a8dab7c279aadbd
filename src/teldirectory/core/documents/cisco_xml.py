"""Read and write the two Cisco IP phone XML schemas.

Phones fetch these files verbatim, so element names and nesting are fixed:

    CiscoIPPhoneMenu{Title?, Prompt?, MenuItem[]{Name, URL}}
    CiscoIPPhoneDirectory{Title?, Prompt?, DirectoryEntry[]{Name, Telephone}}

Serialization is deterministic (sorted entries, fixed indentation, UTF-8 with an
XML declaration), so writing back unchanged data produces identical bytes.
"""

import re
import time
import unicodedata
import xml.etree.ElementTree as ET
from urllib.parse import urlparse
from xml.sax.saxutils import escape

from teldirectory.errors import SchemaError
from teldirectory.models.directory import (
    DirectoryDocument,
    DirectoryEntry,
    ItemType,
    MenuDocument,
    MenuEntry,
)

MENU_ROOT = "CiscoIPPhoneMenu"
DIRECTORY_ROOT = "CiscoIPPhoneDirectory"

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8" standalone="no"?>'


def collation_key(text: str) -> tuple[str, str]:
    """Locale-style sort key: accent- and case-insensitive first, exact text second."""
    decomposed = unicodedata.normalize("NFKD", text)
    base = "".join(c for c in decomposed if not unicodedata.combining(c))
    return base.casefold(), text


def sort_menu_entries(entries: list[MenuEntry] | tuple[MenuEntry, ...]) -> tuple[MenuEntry, ...]:
    return tuple(sorted(entries, key=lambda e: collation_key(e.name)))


def sort_directory_entries(
    entries: list[DirectoryEntry] | tuple[DirectoryEntry, ...],
) -> tuple[DirectoryEntry, ...]:
    return tuple(
        sorted(entries, key=lambda e: (collation_key(e.name), collation_key(e.telephone)))
    )


def derive_id(name: str) -> str:
    """Derive the filename id of a zone, branch or locality from its display name.

    Characters outside [A-Za-z0-9_-] are dropped and runs of '_' or '-' collapsed.
    A name with nothing usable left gets a timestamp placeholder.
    """
    cleaned = re.sub(r"[^A-Za-z0-9_-]", "", name)
    cleaned = re.sub(r"_{2,}", "_", cleaned)
    cleaned = re.sub(r"-{2,}", "-", cleaned)
    if not cleaned.strip("_-"):
        return f"UnnamedItem{int(time.time() * 1000)}"
    return cleaned


def sanitize_id(item_id: str) -> str:
    """Make a caller-supplied id safe to use as a filename (no separators, no '..')."""
    cleaned = re.sub(r"\.\.+", "", item_id)
    cleaned = re.sub(r"[/\\]+", "", cleaned)
    cleaned = re.sub(r"[^A-Za-z0-9_.-]+", "_", cleaned)
    return cleaned


def id_from_url(url: str) -> str:
    """Return the id a menu URL points at: its last path segment without .xml."""
    filename = url.rstrip().split("/")[-1]
    return re.sub(r"\.xml$", "", filename, flags=re.IGNORECASE)


def item_type_from_url(url: str) -> ItemType | None:
    path = urlparse(url).path or url
    if "/zonebranch/" in path:
        return ItemType.ZONE
    if "/branch/" in path:
        return ItemType.BRANCH
    if "/department/" in path:
        return ItemType.LOCALITY
    return None


def _parse_root(raw: str | bytes, expected: str) -> ET.Element:
    if isinstance(raw, str) and not raw.strip():
        msg = f"empty document, expected <{expected}>"
        raise SchemaError(msg)
    try:
        root = ET.fromstring(raw)
    except ET.ParseError as e:
        msg = f"not well-formed XML: {e}"
        raise SchemaError(msg) from e
    if root.tag != expected:
        msg = f"root element is <{root.tag}>, expected <{expected}>"
        raise SchemaError(msg)
    return root


def _text(element: ET.Element, tag: str) -> str | None:
    child = element.find(tag)
    if child is None:
        return None
    return (child.text or "").strip()


def parse_menu_document(raw: str | bytes) -> MenuDocument:
    """Parse a CiscoIPPhoneMenu.

    Raises:
        SchemaError: Wrong or missing root element, or an entry without a
            non-empty Name and URL. A menu with no entries is valid.
    """
    root = _parse_root(raw, MENU_ROOT)
    entries: list[MenuEntry] = []
    for index, item in enumerate(root.findall("MenuItem")):
        name = _text(item, "Name")
        url = _text(item, "URL")
        if not name:
            msg = f"MenuItem #{index + 1} has no Name"
            raise SchemaError(msg)
        if not url:
            msg = f"MenuItem {name!r} has no URL"
            raise SchemaError(msg)
        entries.append(MenuEntry(name=name, url=url))
    return MenuDocument(
        title=_text(root, "Title"), prompt=_text(root, "Prompt"), entries=tuple(entries)
    )


def parse_directory_document(raw: str | bytes) -> DirectoryDocument:
    """Parse a CiscoIPPhoneDirectory.

    Telephone only has to be non-empty here; numeric checks belong to the
    operation that consumes the document.

    Raises:
        SchemaError: Wrong or missing root element, or an entry without a
            non-empty Name and Telephone.
    """
    root = _parse_root(raw, DIRECTORY_ROOT)
    entries: list[DirectoryEntry] = []
    for index, item in enumerate(root.findall("DirectoryEntry")):
        name = _text(item, "Name")
        telephone = _text(item, "Telephone")
        if not name:
            msg = f"DirectoryEntry #{index + 1} has no Name"
            raise SchemaError(msg)
        if not telephone:
            msg = f"DirectoryEntry {name!r} has no Telephone"
            raise SchemaError(msg)
        entries.append(DirectoryEntry(name=name, telephone=telephone))
    return DirectoryDocument(
        title=_text(root, "Title"), prompt=_text(root, "Prompt"), entries=tuple(entries)
    )


def _header_lines(title: str | None, prompt: str | None) -> list[str]:
    lines = []
    if title is not None:
        lines.append(f"  <Title>{escape(title)}</Title>")
    if prompt is not None:
        lines.append(f"  <Prompt>{escape(prompt)}</Prompt>")
    return lines


def serialize_menu_document(doc: MenuDocument) -> str:
    lines = [XML_DECLARATION, f"<{MENU_ROOT}>", *_header_lines(doc.title, doc.prompt)]
    for entry in sort_menu_entries(doc.entries):
        lines += [
            "  <MenuItem>",
            f"    <Name>{escape(entry.name)}</Name>",
            f"    <URL>{escape(entry.url)}</URL>",
            "  </MenuItem>",
        ]
    lines.append(f"</{MENU_ROOT}>")
    return "\n".join(lines) + "\n"


def serialize_directory_document(doc: DirectoryDocument) -> str:
    lines = [XML_DECLARATION, f"<{DIRECTORY_ROOT}>", *_header_lines(doc.title, doc.prompt)]
    for entry in sort_directory_entries(doc.entries):
        lines += [
            "  <DirectoryEntry>",
            f"    <Name>{escape(entry.name)}</Name>",
            f"    <Telephone>{escape(entry.telephone)}</Telephone>",
            "  </DirectoryEntry>",
        ]
    lines.append(f"</{DIRECTORY_ROOT}>")
    return "\n".join(lines) + "\n"
