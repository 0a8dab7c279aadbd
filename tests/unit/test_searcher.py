"""Tests for directory search."""

from teldirectory.core.search.searcher import search_directory
from teldirectory.core.store.tree import DirectoryTreeStore, zone_path
from teldirectory.models.directory import ItemType


def test_search_by_locality_name(populated_store: DirectoryTreeStore) -> None:
    hits = search_directory(populated_store, "centro")

    assert len(hits) == 1
    assert hits[0].locality_name_match
    assert hits[0].to_dict()["fullPath"] == "/Norte/localities/Centro"
    assert hits[0].zone_name == "Norte"


def test_search_by_number_reports_branch(populated_store: DirectoryTreeStore) -> None:
    hits = search_directory(populated_store, "30")

    assert [h.locality_id for h in hits] == ["Cerro", "Playa"]
    data = hits[0].to_dict()
    assert data["branchId"] == "SucursalA"
    assert data["branchName"] == "Sucursal A"
    assert data["fullPath"] == "/Sur/branches/SucursalA/localities/Cerro"
    assert data["matchingExtensions"] == [
        {"name": "Eve", "number": "301", "matchedOn": "extensionNumber"}
    ]


def test_name_matches_rank_first(populated_store: DirectoryTreeStore) -> None:
    """A locality named like the query outranks one with matching extensions."""
    populated_store.upsert_extension("Centro", "Puertas", "110")

    hits = search_directory(populated_store, "PUERT")

    assert [h.locality_id for h in hits] == ["Puerto", "Centro"]
    assert hits[1].matching_extensions[0].matched_on == "extensionName"


def test_more_matching_extensions_rank_higher(populated_store: DirectoryTreeStore) -> None:
    populated_store.upsert_extension("Puerto", "Zed", "210")

    hits = search_directory(populated_store, "10")

    assert [(h.locality_id, len(h.matching_extensions)) for h in hits] == [
        ("Centro", 2),
        ("Puerto", 1),
    ]


def test_locality_linked_twice_is_reported_once(populated_store: DirectoryTreeStore) -> None:
    populated_store.add_child(zone_path("Sur"), "Centro", ItemType.LOCALITY)

    hits = search_directory(populated_store, "alice")

    assert len(hits) == 1
    assert hits[0].zone_id == "Norte"


def test_short_query_returns_nothing(populated_store: DirectoryTreeStore) -> None:
    assert search_directory(populated_store, " a ") == []


def test_limit(populated_store: DirectoryTreeStore) -> None:
    assert len(search_directory(populated_store, "30", limit=1)) == 1


def test_empty_tree(store: DirectoryTreeStore) -> None:
    assert search_directory(store, "centro") == []
