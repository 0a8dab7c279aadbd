"""Active Directory import over LDAP.

Users are read with a paged search, grouped into one locality per department
under a dedicated zone, and returned as extension records for reconciliation.
Organization, job title and e-mail go to the ``extension_details`` table.
"""

import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

import ldap3
from ldap3.core.exceptions import LDAPException
from loguru import logger

from teldirectory.config import (
    AD_SOURCE,
    AD_UNASSIGNED_DEPARTMENT,
    AD_ZONE_NAME,
    DEFAULT_LDAP_ATTRIBUTES,
    DEFAULT_LDAP_FILTER,
    DEFAULT_MENU_PROMPT,
    DEFAULT_MENU_TITLE,
    LDAP_TIMEOUT,
    ZONE_PROMPT,
)
from teldirectory.core.database.schema import upsert_extension_details
from teldirectory.core.documents.cisco_xml import derive_id, sort_directory_entries
from teldirectory.core.store.tree import (
    DirectoryTreeStore,
    is_numeric_extension,
    locality_path,
    main_menu_path,
    zone_path,
)
from teldirectory.errors import AdapterError, TelDirectoryError, ValidationError
from teldirectory.models.directory import (
    DirectoryEntry,
    ExtensionRecord,
    ItemType,
    MenuDocument,
)
from teldirectory.protocols import LdapClient

# Form field name -> key in AdSyncSettings.attributes
_FORM_ATTRIBUTE_FIELDS = {
    "displayNameAttribute": "display_name",
    "extensionAttribute": "extension",
    "departmentAttribute": "department",
    "emailAttribute": "email",
    "phoneAttribute": "phone",
    "organizationAttribute": "organization",
    "jobTitleAttribute": "job_title",
}


@dataclass(frozen=True)
class AdSyncSettings:
    """Connection parameters and attribute mapping for one AD sync."""

    server_url: str
    bind_dn: str
    bind_password: str = field(repr=False)
    search_base: str
    search_filter: str = DEFAULT_LDAP_FILTER
    attributes: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_LDAP_ATTRIBUTES))

    @classmethod
    def from_form(cls, values: Mapping[str, Any]) -> "AdSyncSettings":
        """Build settings from camelCase form values; blank attribute names keep defaults."""
        attributes = dict(DEFAULT_LDAP_ATTRIBUTES)
        for form_key, key in _FORM_ATTRIBUTE_FIELDS.items():
            value = str(values.get(form_key) or "").strip()
            if value:
                attributes[key] = value
        return cls(
            server_url=str(values.get("ldapServerUrl") or "").strip(),
            bind_dn=str(values.get("bindDn") or "").strip(),
            bind_password=str(values.get("bindPassword") or ""),
            search_base=str(values.get("searchBase") or "").strip(),
            search_filter=str(values.get("searchFilter") or "").strip() or DEFAULT_LDAP_FILTER,
            attributes=attributes,
        )

    def validate(self) -> None:
        missing = [
            name
            for name, value in (
                ("server URL", self.server_url),
                ("bind DN", self.bind_dn),
                ("bind password", self.bind_password),
                ("search base", self.search_base),
            )
            if not value
        ]
        if missing:
            msg = f"Missing LDAP settings: {', '.join(missing)}"
            raise ValidationError(msg)
        for key in DEFAULT_LDAP_ATTRIBUTES:
            if not self.attributes.get(key):
                msg = f"Missing LDAP attribute name for {key}"
                raise ValidationError(msg)

    def attribute_list(self) -> list[str]:
        return list(dict.fromkeys(self.attributes[key] for key in DEFAULT_LDAP_ATTRIBUTES))


@dataclass(frozen=True)
class AdUser:
    display_name: str
    extension: str
    department: str
    email: str | None = None
    phone: str | None = None
    organization: str | None = None
    job_title: str | None = None


@dataclass
class AdSyncOutcome:
    """Structural side effects of one AD sync, plus the records to reconcile."""

    records: list[ExtensionRecord] = field(default_factory=list)
    users_processed: int = 0
    users_skipped: int = 0
    extensions_added: int = 0
    localities_created: int = 0
    localities_updated: int = 0
    zone_created: bool = False
    errors_encountered: int = 0

    def details(self) -> dict[str, Any]:
        return {
            "usersProcessed": self.users_processed,
            "usersSkipped": self.users_skipped,
            "extensionsAdded": self.extensions_added,
            "localitiesCreated": self.localities_created,
            "localitiesUpdated": self.localities_updated,
            "zoneCreated": self.zone_created,
            "errorsEncountered": self.errors_encountered,
        }


class LdapDirectoryClient:
    """LdapClient backed by ldap3: simple bind, paged search, unbind."""

    def __init__(self, *, timeout: int = LDAP_TIMEOUT, page_size: int = 500) -> None:
        self.timeout = timeout
        self.page_size = page_size

    def search(
        self,
        *,
        server_url: str,
        bind_dn: str,
        bind_password: str,
        search_base: str,
        search_filter: str,
        attributes: list[str],
    ) -> list[dict[str, Any]]:
        logger.debug("LDAP search on {} base {!r} filter {!r}", server_url, search_base, search_filter)
        try:
            server = ldap3.Server(server_url, connect_timeout=self.timeout, get_info=ldap3.NONE)
            conn = ldap3.Connection(
                server,
                user=bind_dn,
                password=bind_password,
                auto_bind=True,
                read_only=True,
                receive_timeout=self.timeout,
            )
        except LDAPException as e:
            msg = f"Could not bind to {server_url}: {e}"
            raise AdapterError(msg) from e
        try:
            entries = conn.extend.standard.paged_search(
                search_base,
                search_filter,
                attributes=attributes,
                paged_size=self.page_size,
                generator=False,
            )
        except LDAPException as e:
            msg = f"LDAP search failed on {server_url}: {e}"
            raise AdapterError(msg) from e
        finally:
            conn.unbind()
        return [dict(e["attributes"]) for e in entries if e.get("type") == "searchResEntry"]


def _first_value(value: Any) -> str | None:
    """Collapse an LDAP attribute value (scalar or list) to one stripped string."""
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    text = str(value).strip()
    return text or None


def user_from_entry(entry: Mapping[str, Any], attributes: Mapping[str, str]) -> AdUser | None:
    """Map one search result to an AdUser, None when it has no usable extension or name."""

    def get(key: str) -> str | None:
        return _first_value(entry.get(attributes[key]))

    extension = get("extension")
    display_name = get("display_name")
    if extension is None or display_name is None or not is_numeric_extension(extension):
        return None
    return AdUser(
        display_name=display_name,
        extension=extension,
        department=get("department") or AD_UNASSIGNED_DEPARTMENT,
        email=get("email"),
        phone=get("phone"),
        organization=get("organization"),
        job_title=get("job_title"),
    )


def fetch_ad_users(client: LdapClient, settings: AdSyncSettings) -> tuple[list[AdUser], int]:
    """Run the search and map entries.

    Returns:
        (users, number of entries skipped for lacking an extension or name)

    Raises:
        AdapterError: The server could not be reached, bound or searched.
    """
    settings.validate()
    entries = client.search(
        server_url=settings.server_url,
        bind_dn=settings.bind_dn,
        bind_password=settings.bind_password,
        search_base=settings.search_base,
        search_filter=settings.search_filter,
        attributes=settings.attribute_list(),
    )
    users: list[AdUser] = []
    skipped = 0
    for entry in entries:
        user = user_from_entry(entry, settings.attributes)
        if user is None:
            skipped += 1
            logger.debug("Skipping LDAP entry without a usable extension or name")
            continue
        users.append(user)
    logger.info("LDAP returned {} entries, {} usable users", len(entries), len(users))
    return users, skipped


def _ensure_ad_zone(store: DirectoryTreeStore) -> tuple[str, bool]:
    zone_rel = zone_path(derive_id(AD_ZONE_NAME))
    created = False
    if store.read_menu(zone_rel) is None:
        store.write_menu(zone_rel, MenuDocument(title=AD_ZONE_NAME, prompt=ZONE_PROMPT))
        created = True
        logger.info("Created zone {}", zone_rel)
    store.ensure_menu_entry(
        main_menu_path(),
        AD_ZONE_NAME,
        store.child_url(ItemType.ZONE, derive_id(AD_ZONE_NAME)),
        title=DEFAULT_MENU_TITLE,
        prompt=DEFAULT_MENU_PROMPT,
    )
    return zone_rel, created


def _sync_department(
    store: DirectoryTreeStore,
    zone_rel: str,
    department: str,
    users: list[AdUser],
    outcome: AdSyncOutcome,
) -> str:
    link = store.ensure_locality(zone_rel, department, parent_title=AD_ZONE_NAME)
    if link.created:
        outcome.localities_created += 1
    rel = locality_path(link.locality_id)
    doc = store.read_directory(rel)
    if doc is None:
        msg = f"Locality {rel} disappeared during sync"
        raise TelDirectoryError(msg)

    known = {e.telephone for e in doc.entries}
    added: list[DirectoryEntry] = []
    for user in users:
        if user.extension not in known:
            known.add(user.extension)
            added.append(DirectoryEntry(name=user.display_name, telephone=user.extension))
    if added:
        store.write_directory(
            rel, replace(doc, entries=sort_directory_entries([*doc.entries, *added]))
        )
        outcome.extensions_added += len(added)
        if not link.created:
            outcome.localities_updated += 1
    return link.locality_id


def _save_details(
    conn: sqlite3.Connection, locality_id: str, users: list[AdUser], outcome: AdSyncOutcome
) -> None:
    try:
        for user in users:
            upsert_extension_details(
                conn,
                extension_number=user.extension,
                locality_id=locality_id,
                source=AD_SOURCE,
                user_name=user.display_name,
                organization=user.organization,
                ad_department=user.department,
                job_title=user.job_title,
                email=user.email,
                main_phone_number=user.phone,
            )
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        logger.error("Failed to store extension details for {}: {}", locality_id, e)
        outcome.errors_encountered += 1


def sync_active_directory(
    store: DirectoryTreeStore,
    settings: AdSyncSettings,
    client: LdapClient | None = None,
    conn: sqlite3.Connection | None = None,
) -> AdSyncOutcome:
    """Import AD users into the tree and collect their records.

    Raises:
        AdapterError: The directory server could not be used at all.
        ValidationError: Settings are incomplete.
    """
    users, skipped = fetch_ad_users(client or LdapDirectoryClient(), settings)
    outcome = AdSyncOutcome(users_processed=len(users), users_skipped=skipped)
    zone_rel, outcome.zone_created = _ensure_ad_zone(store)

    by_department: dict[str, list[AdUser]] = {}
    for user in users:
        by_department.setdefault(user.department, []).append(user)

    for department, department_users in by_department.items():
        try:
            locality_id = _sync_department(store, zone_rel, department, department_users, outcome)
        except TelDirectoryError as e:
            logger.error("Failed to sync department {!r}: {}", department, e)
            outcome.errors_encountered += 1
            continue
        if conn is not None:
            _save_details(conn, locality_id, department_users, outcome)
        outcome.records += [
            ExtensionRecord(number=u.extension, name=u.display_name, source_id=settings.server_url)
            for u in department_users
        ]

    logger.info(
        "AD sync: {} users, {} extensions added, {} localities created, {} updated",
        outcome.users_processed,
        outcome.extensions_added,
        outcome.localities_created,
        outcome.localities_updated,
    )
    return outcome
