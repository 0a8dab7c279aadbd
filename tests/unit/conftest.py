"""Shared test fixtures."""

import sqlite3
from pathlib import Path

import pytest

from teldirectory.config import NetworkConfig
from teldirectory.core.database.schema import create_schema
from teldirectory.core.store.tree import DirectoryTreeStore, main_menu_path, zone_path
from teldirectory.models.directory import ItemType

NETWORK = NetworkConfig(host="10.0.0.5", port="3000")
BASE_URL = "http://10.0.0.5:3000/ivoxsdir"


@pytest.fixture
def store(tmp_path: Path) -> DirectoryTreeStore:
    """An empty directory tree."""
    return DirectoryTreeStore(tmp_path / "ivoxsdir", NETWORK)


@pytest.fixture
def populated_store(store: DirectoryTreeStore) -> DirectoryTreeStore:
    """Two zones: Norte with two direct localities, Sur with one branch of two.

    Norte/Centro:   Alice 100, Bob 101
    Norte/Puerto:   Carol 200
    Sur/SucursalA/Playa: Dave 300
    Sur/SucursalA/Cerro: Eve 301
    """
    store.add_child(main_menu_path(), "Norte", ItemType.ZONE)
    store.add_child(main_menu_path(), "Sur", ItemType.ZONE)
    store.add_child(zone_path("Norte"), "Centro", ItemType.LOCALITY)
    store.add_child(zone_path("Norte"), "Puerto", ItemType.LOCALITY)
    store.add_child(zone_path("Sur"), "Sucursal A", ItemType.BRANCH)
    store.add_child("branch/SucursalA.xml", "Playa", ItemType.LOCALITY)
    store.add_child("branch/SucursalA.xml", "Cerro", ItemType.LOCALITY)
    store.upsert_extension("Centro", "Alice", "100")
    store.upsert_extension("Centro", "Bob", "101")
    store.upsert_extension("Puerto", "Carol", "200")
    store.upsert_extension("Playa", "Dave", "300")
    store.upsert_extension("Cerro", "Eve", "301")
    return store


@pytest.fixture
def db() -> sqlite3.Connection:
    """In-memory database with the schema applied."""
    conn = sqlite3.connect(":memory:")
    create_schema(conn)
    return conn
