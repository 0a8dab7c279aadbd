"""Tests for the Active Directory import."""

import sqlite3
from types import SimpleNamespace
from typing import Any

import ldap3
import pytest
from ldap3.core.exceptions import LDAPBindError

from teldirectory.config import DEFAULT_LDAP_ATTRIBUTES
from teldirectory.core.database.schema import get_extension_details
from teldirectory.core.sources.ldap_source import (
    AdSyncSettings,
    LdapDirectoryClient,
    sync_active_directory,
    user_from_entry,
)
from teldirectory.core.store.tree import (
    DirectoryTreeStore,
    locality_path,
    main_menu_path,
    zone_path,
)
from teldirectory.errors import AdapterError, ValidationError
from teldirectory.models.directory import DirectoryEntry, ExtensionRecord
from tests.unit.fakes import FakeLdapClient

SERVER = "ldap://dc.example.com"

ENTRIES = [
    {
        "displayName": ["Alice Smith"],
        "ipPhone": "100",
        "department": "Ventas",
        "mail": "alice@example.com",
        "company": "Acme",
        "title": "Sales Rep",
    },
    {"displayName": "Bob Builder", "ipPhone": ["700"], "department": []},
    {"displayName": "No Extension"},
    {"displayName": "Letters", "ipPhone": "x12"},
]


def _settings(**overrides: Any) -> AdSyncSettings:
    values = {
        "ldapServerUrl": SERVER,
        "bindDn": "CN=svc,DC=example,DC=com",
        "bindPassword": "secret",
        "searchBase": "DC=example,DC=com",
    }
    values.update(overrides)
    return AdSyncSettings.from_form(values)


class TestSettings:
    def test_from_form_defaults(self) -> None:
        settings = _settings()

        assert settings.search_filter == "(objectClass=user)"
        assert dict(settings.attributes) == DEFAULT_LDAP_ATTRIBUTES
        assert "secret" not in repr(settings)

    def test_from_form_overrides_attributes(self) -> None:
        settings = _settings(extensionAttribute="telephoneExtension", departmentAttribute=" ")

        assert settings.attributes["extension"] == "telephoneExtension"
        assert settings.attributes["department"] == "department"
        assert "telephoneExtension" in settings.attribute_list()

    def test_validate_lists_missing_fields(self) -> None:
        with pytest.raises(ValidationError, match="bind password, search base"):
            _settings(bindPassword="", searchBase="").validate()


class TestUserFromEntry:
    def test_maps_list_values(self) -> None:
        user = user_from_entry(ENTRIES[0], DEFAULT_LDAP_ATTRIBUTES)

        assert user is not None
        assert user.display_name == "Alice Smith"
        assert user.organization == "Acme"
        assert user.job_title == "Sales Rep"

    def test_missing_department_is_unassigned(self) -> None:
        user = user_from_entry(ENTRIES[1], DEFAULT_LDAP_ATTRIBUTES)

        assert user is not None
        assert user.department == "Unassigned"

    @pytest.mark.parametrize("entry", [ENTRIES[2], ENTRIES[3], {"ipPhone": "100"}])
    def test_unusable_entries(self, entry: dict[str, Any]) -> None:
        assert user_from_entry(entry, DEFAULT_LDAP_ATTRIBUTES) is None


class TestSyncActiveDirectory:
    def test_creates_zone_and_department_localities(
        self, populated_store: DirectoryTreeStore, db: sqlite3.Connection
    ) -> None:
        client = FakeLdapClient(ENTRIES)

        outcome = sync_active_directory(populated_store, _settings(), client, db)

        assert outcome.users_processed == 2
        assert outcome.users_skipped == 2
        assert outcome.zone_created
        assert outcome.localities_created == 2
        assert outcome.extensions_added == 2
        assert outcome.records == [
            ExtensionRecord("100", "Alice Smith", SERVER),
            ExtensionRecord("700", "Bob Builder", SERVER),
        ]
        main = populated_store.read_menu(main_menu_path())
        assert main is not None
        assert [e.name for e in main.entries] == ["Active Directory Users", "Norte", "Sur"]
        zone = populated_store.read_menu(zone_path("ActiveDirectoryUsers"))
        assert zone is not None
        assert [e.name for e in zone.entries] == ["Unassigned", "Ventas"]
        assert client.calls[0]["attributes"] == list(DEFAULT_LDAP_ATTRIBUTES.values())

    def test_saves_extension_details(
        self, populated_store: DirectoryTreeStore, db: sqlite3.Connection
    ) -> None:
        sync_active_directory(populated_store, _settings(), FakeLdapClient(ENTRIES), db)

        details = get_extension_details(db, "100")

        assert len(details) == 1
        assert details[0]["locality_id"] == "Ventas"
        assert details[0]["source"] == "ad"
        assert details[0]["email"] == "alice@example.com"
        assert details[0]["ad_department"] == "Ventas"

    def test_second_run_adds_nothing(
        self, populated_store: DirectoryTreeStore, db: sqlite3.Connection
    ) -> None:
        sync_active_directory(populated_store, _settings(), FakeLdapClient(ENTRIES), db)

        outcome = sync_active_directory(populated_store, _settings(), FakeLdapClient(ENTRIES), db)

        assert not outcome.zone_created
        assert outcome.localities_created == 0
        assert outcome.extensions_added == 0
        assert len(get_extension_details(db, "100")) == 1

    def test_department_matching_existing_locality_reuses_it(
        self, populated_store: DirectoryTreeStore
    ) -> None:
        client = FakeLdapClient(
            [
                {"displayName": "Zed", "ipPhone": "150", "department": "Centro"},
                {"displayName": "Alice Smith", "ipPhone": "100", "department": "Centro"},
            ]
        )

        outcome = sync_active_directory(populated_store, _settings(), client)

        assert outcome.localities_created == 0
        assert outcome.localities_updated == 1
        assert outcome.extensions_added == 1
        doc = populated_store.read_directory(locality_path("Centro"))
        assert doc is not None
        assert DirectoryEntry("Zed", "150") in doc.entries
        assert DirectoryEntry("Alice", "100") in doc.entries

    def test_unreachable_server(self, populated_store: DirectoryTreeStore) -> None:
        with pytest.raises(AdapterError, match="Could not bind"):
            sync_active_directory(populated_store, _settings(), FakeLdapClient(fail=True))
        assert not populated_store.exists(zone_path("ActiveDirectoryUsers"))

    def test_incomplete_settings(self, populated_store: DirectoryTreeStore) -> None:
        client = FakeLdapClient(ENTRIES)

        with pytest.raises(ValidationError):
            sync_active_directory(populated_store, _settings(ldapServerUrl=""), client)
        assert client.calls == []


class _FakeConnection:
    instances: list["_FakeConnection"] = []

    def __init__(self, server: Any, **kwargs: Any) -> None:
        self.server = server
        self.kwargs = kwargs
        self.unbound = False
        self.extend = SimpleNamespace(standard=SimpleNamespace(paged_search=self._paged_search))
        self.search_args: tuple[Any, ...] = ()
        _FakeConnection.instances.append(self)

    def _paged_search(self, *args: Any, **kwargs: Any) -> list[dict[str, Any]]:
        self.search_args = (*args, kwargs)
        return [
            {"type": "searchResEntry", "attributes": {"displayName": "Alice", "ipPhone": "100"}},
            {"type": "searchResRef", "uri": ["ldap://other.example.com/DC=other"]},
        ]

    def unbind(self) -> None:
        self.unbound = True


class TestLdapDirectoryClient:
    def test_paged_search_returns_entries_and_unbinds(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _FakeConnection.instances = []
        monkeypatch.setattr(ldap3, "Connection", _FakeConnection)

        entries = LdapDirectoryClient(page_size=50).search(
            server_url=SERVER,
            bind_dn="svc",
            bind_password="secret",
            search_base="DC=example,DC=com",
            search_filter="(objectClass=user)",
            attributes=["displayName", "ipPhone"],
        )

        assert entries == [{"displayName": "Alice", "ipPhone": "100"}]
        conn = _FakeConnection.instances[0]
        assert conn.unbound
        assert conn.kwargs["auto_bind"] is True
        assert conn.search_args[-1]["paged_size"] == 50

    def test_bind_failure_becomes_adapter_error(self, monkeypatch: pytest.MonkeyPatch) -> None:
        def refuse(*args: Any, **kwargs: Any) -> None:
            msg = "invalidCredentials"
            raise LDAPBindError(msg)

        monkeypatch.setattr(ldap3, "Connection", refuse)

        with pytest.raises(AdapterError, match="Could not bind to ldap://dc.example.com"):
            LdapDirectoryClient().search(
                server_url=SERVER,
                bind_dn="svc",
                bind_password="wrong",
                search_base="DC=example,DC=com",
                search_filter="(objectClass=user)",
                attributes=["displayName"],
            )
