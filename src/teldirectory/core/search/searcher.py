"""Search localities and extensions across every zone of the tree."""

from loguru import logger

from teldirectory.core.documents.cisco_xml import collation_key, id_from_url
from teldirectory.core.store.tree import DirectoryTreeStore
from teldirectory.errors import NotFoundError, SchemaError, StoreError
from teldirectory.models.directory import LocalitySnapshot, MatchedExtension, SearchHit

MIN_QUERY_LENGTH = 2
MAX_RESULTS = 20


def _match_locality(locality: LocalitySnapshot, needle: str) -> tuple[bool, list[MatchedExtension]]:
    name_match = needle in locality.display_name.lower()
    matches: list[MatchedExtension] = []
    for ext in locality.extensions:
        if needle in ext.name.lower():
            matches.append(MatchedExtension(ext.name, ext.telephone, "extensionName"))
        elif needle in ext.telephone.lower():
            matches.append(MatchedExtension(ext.name, ext.telephone, "extensionNumber"))
    return name_match, matches


def search_directory(
    store: DirectoryTreeStore, query: str, *, limit: int = MAX_RESULTS
) -> list[SearchHit]:
    """Case-insensitive substring search over locality names and extensions.

    Each locality is reported once, under the first zone that reaches it.
    Localities whose own name matches come first, then those with more
    matching extensions, then by name.

    Args:
        store: The directory tree.
        query: At least two characters; shorter queries return nothing.
        limit: Maximum number of hits.
    """
    needle = query.strip().lower()
    if len(needle) < MIN_QUERY_LENGTH:
        return []

    hits: list[SearchHit] = []
    seen: set[str] = set()
    try:
        zones = store.list_zones()
    except (SchemaError, StoreError) as e:
        logger.error("Cannot read root menu for search: {}", e)
        return []

    for zone in zones:
        zone_id = id_from_url(zone.url)
        try:
            snapshot = store.read_tree(zone_id)
        except (NotFoundError, SchemaError, StoreError) as e:
            logger.warning("Skipping zone {} in search: {}", zone_id, e)
            continue
        for locality in snapshot.localities:
            if locality.locality_id in seen:
                continue
            name_match, matches = _match_locality(locality, needle)
            if not name_match and not matches:
                continue
            seen.add(locality.locality_id)
            hits.append(
                SearchHit(
                    locality_id=locality.locality_id,
                    locality_name=locality.display_name,
                    zone_id=zone_id,
                    zone_name=zone.name,
                    locality_name_match=name_match,
                    matching_extensions=tuple(matches),
                    branch_id=locality.branch_id,
                    branch_name=locality.branch_name,
                )
            )

    hits.sort(
        key=lambda h: (
            not h.locality_name_match,
            -len(h.matching_extensions),
            collation_key(h.locality_name),
        )
    )
    return hits[:limit]
