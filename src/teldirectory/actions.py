"""Authorized entry points over the directory tree.

Every mutating method checks the authorization gate first and returns a plain
dict with at least ``success`` and ``message``. Directory errors are turned
into failure dicts here; nothing raises past this module under normal
operation.
"""

import re
import sqlite3
import time
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

from teldirectory.config import (
    DIRECTORY_CONFIG_FILE,
    MAIN_MENU_FILENAME,
    save_directory_config,
    save_network_config,
)
from teldirectory.core.database.schema import get_metadata, set_metadata
from teldirectory.core.documents.cisco_xml import (
    id_from_url,
    parse_directory_document,
    parse_menu_document,
    sanitize_id,
)
from teldirectory.core.search.searcher import search_directory
from teldirectory.core.sources.csv_source import import_csv
from teldirectory.core.sources.feed_source import fetch_feed_records, parse_feed_urls
from teldirectory.core.sources.ldap_source import AdSyncSettings, sync_active_directory
from teldirectory.core.store.tree import (
    DirectoryTreeStore,
    branch_path,
    main_menu_path,
    zone_path,
)
from teldirectory.core.sync.engine import reconcile
from teldirectory.errors import (
    DuplicateExtensionError,
    DuplicateNameError,
    NotFoundError,
    SchemaError,
    StoreError,
    TelDirectoryError,
    ValidationError,
)
from teldirectory.models.directory import DirectoryEntry, ItemType, SyncResult
from teldirectory.protocols import AuthorizationGate, FeedSession, LdapClient

AUTH_MESSAGE = "Authentication required."
AUTH_ERROR = "User not authenticated"
SYNC_SOURCES = ("csv", "feeds", "ad")
_FILE_ID = re.compile(r"^[A-Za-z0-9_-]+$")

_EXPECTED_ERRORS = (ValidationError, DuplicateNameError, DuplicateExtensionError, NotFoundError)


def _denied() -> dict[str, Any]:
    return {"success": False, "message": AUTH_MESSAGE, "error": AUTH_ERROR}


def _failed(action: str, e: Exception) -> dict[str, Any]:
    if isinstance(e, _EXPECTED_ERRORS):
        logger.info("Could not {}: {}", action, e)
        return {"success": False, "message": str(e)}
    logger.error("Failed to {}: {}", action, e)
    return {"success": False, "message": f"Failed to {action}: {e}", "error": str(e)}


def _sync_denied() -> dict[str, Any]:
    return SyncResult(success=False, message=AUTH_MESSAGE, error=AUTH_ERROR).to_dict()


def _check_file_id(value: str, label: str) -> dict[str, Any] | None:
    if not value:
        return {"success": False, "message": f"{label} is required."}
    if not _FILE_ID.match(value):
        return {
            "success": False,
            "message": f"{label} must be alphanumeric, underscore or hyphen, without .xml.",
        }
    return None


def _label(value: ItemType | str) -> str:
    return value.value if isinstance(value, ItemType) else str(value)


def _item_type(value: ItemType | str) -> ItemType:
    try:
        item_type = ItemType(value)
    except ValueError:
        msg = f"Unknown item type {value!r}"
        raise ValidationError(msg) from None
    if item_type is ItemType.ZONE:
        msg = "Zones are managed with add_zone/delete_zone"
        raise ValidationError(msg)
    return item_type


def _parent_path(zone_id: str, item_type: ItemType, branch_id: str | None) -> str:
    if branch_id:
        if item_type is ItemType.BRANCH:
            msg = "Cannot place a branch under another branch."
            raise ValidationError(msg)
        return branch_path(branch_id)
    if not sanitize_id(zone_id):
        msg = "Zone ID is required."
        raise ValidationError(msg)
    return zone_path(zone_id)


class DirectoryActions:
    """Operations an administrator can run against one directory tree.

    Args:
        store: The directory tree.
        gate: Answers whether the caller may mutate the tree.
        feed_session: HTTP session for feed sync; a fresh requests session if None.
        ldap_client: Client for AD sync; ldap3-backed if None.
        db: Database for AD extension details; details are not stored if None.
    """

    def __init__(
        self,
        store: DirectoryTreeStore,
        gate: AuthorizationGate,
        *,
        feed_session: FeedSession | None = None,
        ldap_client: LdapClient | None = None,
        db: sqlite3.Connection | None = None,
    ) -> None:
        self.store = store
        self.gate = gate
        self.feed_session = feed_session
        self.ldap_client = ldap_client
        self.db = db

    # --- Zones ---

    def add_zone(self, zone_name: str) -> dict[str, Any]:
        if not self.gate.is_authorized():
            return _denied()
        try:
            zone_id = self.store.add_child(main_menu_path(), zone_name, ItemType.ZONE)
        except (TelDirectoryError, OSError) as e:
            return _failed("add zone", e)
        return {
            "success": True,
            "message": f'Zone "{zone_name.strip()}" added successfully.',
            "id": zone_id,
        }

    def delete_zone(self, zone_id: str) -> dict[str, Any]:
        if not self.gate.is_authorized():
            return _denied()
        zone_id = sanitize_id(zone_id)
        if not zone_id:
            return {"success": False, "message": "Zone ID is required."}
        try:
            report = self.store.delete_child(main_menu_path(), zone_id, ItemType.ZONE)
        except (TelDirectoryError, OSError) as e:
            return _failed("delete zone", e)
        output: dict[str, Any] = {
            "success": True,
            "message": f'Zone "{zone_id}" and its contents deleted successfully.',
            "filesRemoved": len(report.removed),
        }
        if report.failed:
            output["message"] += f" Could not delete {len(report.failed)} files, check server logs."
            output["failedFiles"] = report.failed
        return output

    # --- Branches and localities ---

    def add_item(
        self,
        zone_id: str,
        item_name: str,
        item_type: ItemType | str,
        branch_id: str | None = None,
    ) -> dict[str, Any]:
        if not self.gate.is_authorized():
            return _denied()
        try:
            kind = _item_type(item_type)
            parent = _parent_path(zone_id, kind, branch_id)
            new_id = self.store.add_child(parent, item_name, kind)
        except (TelDirectoryError, OSError) as e:
            return _failed(f"add {_label(item_type)}", e)
        return {
            "success": True,
            "message": f'{kind.value.capitalize()} "{item_name.strip()}" added successfully.',
            "id": new_id,
        }

    def edit_item(
        self,
        zone_id: str,
        old_item_id: str,
        new_item_name: str,
        item_type: ItemType | str,
        branch_id: str | None = None,
    ) -> dict[str, Any]:
        if not self.gate.is_authorized():
            return _denied()
        try:
            kind = _item_type(item_type)
            parent = _parent_path(zone_id, kind, branch_id)
            new_id = self.store.rename_child(parent, old_item_id, new_item_name, kind)
        except (TelDirectoryError, OSError) as e:
            return _failed(f"edit {_label(item_type)}", e)
        return {
            "success": True,
            "message": (
                f'{kind.value.capitalize()} "{sanitize_id(old_item_id)}" '
                f'updated to "{new_item_name.strip()}".'
            ),
            "id": new_id,
        }

    def delete_item(
        self,
        zone_id: str,
        item_id: str,
        item_type: ItemType | str,
        branch_id: str | None = None,
    ) -> dict[str, Any]:
        if not self.gate.is_authorized():
            return _denied()
        if not sanitize_id(item_id):
            return {"success": False, "message": "Zone ID and Item ID are required."}
        try:
            kind = _item_type(item_type)
            parent = _parent_path(zone_id, kind, branch_id)
            report = self.store.delete_child(parent, item_id, kind)
        except (TelDirectoryError, OSError) as e:
            return _failed(f"delete {_label(item_type)}", e)
        output: dict[str, Any] = {
            "success": True,
            "message": f"{kind.value.capitalize()} {sanitize_id(item_id)} deleted.",
            "filesRemoved": len(report.removed),
        }
        if report.failed:
            output["failedFiles"] = report.failed
        return output

    # --- Extensions ---

    def add_extension(self, locality_id: str, name: str, telephone: str) -> dict[str, Any]:
        if not self.gate.is_authorized():
            return _denied()
        if not sanitize_id(locality_id):
            return {"success": False, "message": "Invalid Locality ID."}
        try:
            self.store.upsert_extension(locality_id, name, telephone)
        except (TelDirectoryError, OSError) as e:
            return _failed("add extension", e)
        return {
            "success": True,
            "message": f'Extension "{name.strip()}" added to locality "{sanitize_id(locality_id)}".',
        }

    def edit_extension(
        self,
        locality_id: str,
        old_name: str,
        old_number: str,
        new_name: str,
        new_number: str,
    ) -> dict[str, Any]:
        if not self.gate.is_authorized():
            return _denied()
        if not sanitize_id(locality_id):
            return {"success": False, "message": "Invalid Locality ID."}
        try:
            self.store.edit_extension(
                locality_id,
                DirectoryEntry(name=old_name, telephone=old_number),
                new_name,
                new_number,
            )
        except (TelDirectoryError, OSError) as e:
            return _failed("edit extension", e)
        return {
            "success": True,
            "message": f'Extension "{old_name}" updated to "{new_name.strip()}".',
        }

    def delete_extension(self, locality_id: str, name: str, number: str) -> dict[str, Any]:
        if not self.gate.is_authorized():
            return _denied()
        locality_id = sanitize_id(locality_id)
        if not locality_id or not name or not number:
            return {
                "success": False,
                "message": "Locality ID, extension name, and number are required.",
            }
        try:
            self.store.remove_extension(locality_id, name, number)
        except (TelDirectoryError, OSError) as e:
            return _failed("delete extension", e)
        return {
            "success": True,
            "message": f"Extension {name} ({number}) deleted from {locality_id}.",
        }

    def move_extensions(
        self,
        source_locality_id: str,
        extensions: Sequence[DirectoryEntry],
        destination_zone_id: str,
        *,
        destination_locality_id: str | None = None,
        new_locality_name: str | None = None,
        destination_branch_id: str | None = None,
    ) -> dict[str, Any]:
        """Move extensions to an existing locality, or to a new one created under
        the destination zone (or branch)."""
        if not self.gate.is_authorized():
            return _denied()
        if not extensions:
            return {"success": False, "message": "No extensions selected to move."}
        if not destination_locality_id and not (new_locality_name or "").strip():
            return {
                "success": False,
                "message": "A destination locality or a new locality name is required.",
            }
        try:
            if destination_locality_id:
                destination_id = sanitize_id(destination_locality_id)
            else:
                parent = _parent_path(
                    destination_zone_id, ItemType.LOCALITY, destination_branch_id
                )
                if not self.store.exists(parent):
                    msg = f"Destination menu {parent} not found"
                    raise NotFoundError(msg, path=parent)
                link = self.store.ensure_locality(parent, (new_locality_name or "").strip())
                destination_id = link.locality_id
            report = self.store.move_extensions(source_locality_id, extensions, destination_id)
        except (TelDirectoryError, OSError) as e:
            return _failed("move extensions", e)
        return {
            "success": True,
            "message": (
                f"Moved {report.added + report.already_present} extensions from "
                f'"{sanitize_id(source_locality_id)}" to "{destination_id}".'
            ),
            "destinationLocalityId": destination_id,
            "movedCount": report.added,
            "alreadyPresentCount": report.already_present,
        }

    # --- XML file import ---

    def import_locality_xml(self, locality_id: str, xml_text: str) -> dict[str, Any]:
        """Merge the entries of an uploaded CiscoIPPhoneDirectory into a locality."""
        if not self.gate.is_authorized():
            return _denied()
        invalid_id = _check_file_id(locality_id, "Locality ID")
        if invalid_id:
            return invalid_id
        if not xml_text.strip():
            return {"success": False, "message": "No XML content provided for locality import."}
        try:
            doc = parse_directory_document(xml_text)
            if not doc.entries:
                return {
                    "success": True,
                    "message": "XML is valid (CiscoIPPhoneDirectory) but has no DirectoryEntry.",
                    "extensionsAdded": 0,
                }
            report = self.store.merge_extensions(locality_id, doc.entries)
        except (TelDirectoryError, OSError) as e:
            return _failed(f"import extensions for locality {locality_id}", e)
        output: dict[str, Any] = {
            "success": True,
            "message": (
                f"Imported {len(doc.entries)} entries into locality '{locality_id}': "
                f"{report.added} added, {report.already_present} already present."
            ),
            "extensionsAdded": report.added,
            "alreadyPresent": report.already_present,
        }
        if report.invalid:
            output["message"] += f" Skipped {len(report.invalid)} invalid entries."
            output["invalidEntries"] = [
                {"name": e.name, "telephone": e.telephone} for e in report.invalid
            ]
        return output

    def import_zone_xml(self, zone_id: str, xml_text: str) -> dict[str, Any]:
        """Create and link a locality for every MenuItem of an uploaded CiscoIPPhoneMenu."""
        if not self.gate.is_authorized():
            return _denied()
        invalid_id = _check_file_id(zone_id, "Zone ID")
        if invalid_id:
            return invalid_id
        if not xml_text.strip():
            return {"success": False, "message": "No XML content provided for zone import."}
        zone_rel = zone_path(zone_id)
        try:
            menu = parse_menu_document(xml_text)
            if not self.store.exists(zone_rel):
                msg = f'Zone "{zone_id}" not found'
                raise NotFoundError(msg, path=zone_rel)
        except (TelDirectoryError, OSError) as e:
            return _failed(f"import localities for zone {zone_id}", e)
        if not menu.entries:
            return {
                "success": True,
                "message": "XML is valid (CiscoIPPhoneMenu) but has no MenuItem.",
                "localitiesCreated": 0,
                "localitiesLinked": 0,
            }

        created = linked = 0
        errors: list[dict[str, str]] = []
        for item in menu.entries:
            try:
                link = self.store.ensure_locality(zone_rel, item.name)
                if link.created:
                    created += 1
                else:
                    _, changed = self.store.ensure_menu_entry(
                        zone_rel,
                        item.name,
                        self.store.child_url(ItemType.LOCALITY, link.locality_id),
                    )
                    linked += int(changed)
            except (TelDirectoryError, OSError) as e:
                logger.error("Could not import locality {!r} into {}: {}", item.name, zone_rel, e)
                errors.append({"name": item.name, "error": str(e)})
        output: dict[str, Any] = {
            "success": not errors,
            "message": (
                f"Processed {len(menu.entries)} localities for zone '{zone_id}': "
                f"{created} created, {linked} existing ones linked."
            ),
            "localitiesCreated": created,
            "localitiesLinked": linked,
        }
        if errors:
            output["message"] += f" {len(errors)} could not be imported."
            output["errors"] = errors
        return output

    # --- Reconciliation entry points ---

    def import_csv(self, csv_text: str) -> dict[str, Any]:
        """Import CSV rows, then reconcile names against everything the CSV lists."""
        if not self.gate.is_authorized():
            output = _sync_denied()
            output["details"] = {"errors": [{"row": 0, "data": "", "error": AUTH_ERROR}]}
            return output
        if not csv_text.strip():
            result = SyncResult(
                success=False, message="CSV file is empty or contains no valid data rows."
            )
            return result.to_dict()

        imported = import_csv(self.store, csv_text)
        result = reconcile(self.store, imported.records, manage_missing=False)
        details = imported.details()
        if result.details:
            details.update(result.details)
        result.details = details
        result.success = result.success and not imported.errors

        summary = (
            f"CSV import {'successful' if not imported.errors else 'completed with some errors'}. "
            f"Processed {imported.processed_rows} of {imported.total_rows} data rows. "
            f"Added {imported.extensions_added} extensions."
        )
        if imported.new_localities_created:
            summary += f" Created {imported.new_localities_created} new locality files."
        if imported.parent_menus_updated:
            summary += (
                f" Updated {imported.parent_menus_updated} zone/branch menus with new locality links."
            )
        if imported.main_menu_updated_count:
            summary += (
                f" Updated {MAIN_MENU_FILENAME} with {imported.main_menu_updated_count} new zones."
            )
        if imported.errors:
            summary += f" Encountered {len(imported.errors)} errors."
        result.message = f"{summary} {result.message}"
        self._record_sync("csv")
        return result.to_dict()

    def sync_feeds(self, feed_urls_text: str) -> dict[str, Any]:
        """Fetch every listed feed and reconcile names against them."""
        if not self.gate.is_authorized():
            return _sync_denied()
        urls = parse_feed_urls(feed_urls_text)
        if not urls:
            return SyncResult(success=False, message="No valid XML feed URLs provided.").to_dict()

        records, failed_feeds = fetch_feed_records(urls, self.feed_session)
        # With no feed readable there is nothing to compare the missing list against.
        result = reconcile(self.store, records, manage_missing=len(failed_feeds) < len(urls))
        details = dict(result.details or {})
        details.update(feedsRequested=len(urls), feedsFailed=failed_feeds)
        result.details = details
        if failed_feeds:
            result.message += f" {len(failed_feeds)} of {len(urls)} feeds could not be read."
        self._record_sync("feeds")
        return result.to_dict()

    def sync_active_directory(self, settings: AdSyncSettings | Mapping[str, Any]) -> dict[str, Any]:
        """Import users from Active Directory and reconcile names against them."""
        if not self.gate.is_authorized():
            return _sync_denied()
        if not isinstance(settings, AdSyncSettings):
            settings = AdSyncSettings.from_form(settings)
        try:
            outcome = sync_active_directory(self.store, settings, self.ldap_client, self.db)
        except TelDirectoryError as e:
            logger.error("AD sync failed: {}", e)
            return SyncResult(success=False, message=f"AD sync failed: {e}", error=str(e)).to_dict()

        result = reconcile(self.store, outcome.records, manage_missing=False)
        details = outcome.details()
        if result.details:
            details.update(result.details)
        result.details = details
        result.success = result.success and not outcome.errors_encountered
        result.message = (
            f"AD sync complete. Processed {outcome.users_processed} users "
            f"({outcome.users_skipped} skipped), added {outcome.extensions_added} extensions. "
            f"{result.message}"
        )
        self._record_sync("ad")
        return result.to_dict()

    def _record_sync(self, source: str) -> None:
        if self.db is None:
            return
        try:
            set_metadata(self.db, f"last_sync_at.{source}", str(int(time.time())))
        except sqlite3.Error as e:
            logger.warning("Could not record {} sync time: {}", source, e)

    def last_sync_times(self) -> dict[str, str | None]:
        """ISO time of the last completed run per source; None if it never ran."""
        times: dict[str, str | None] = dict.fromkeys(SYNC_SOURCES)
        if self.db is None:
            return times
        for source in SYNC_SOURCES:
            value = get_metadata(self.db, f"last_sync_at.{source}")
            if value:
                times[source] = datetime.fromtimestamp(int(value), tz=UTC).isoformat()
        return times

    # --- Maintenance ---

    def update_urls(self, host: str, port: str) -> dict[str, Any]:
        """Point every menu URL at a new host and/or port and save the network config."""
        if not self.gate.is_authorized():
            return _denied()
        host = host.strip()
        port = port.strip()
        if not host and not port:
            return {
                "success": False,
                "message": "Host or Port must be provided to update XML URLs.",
            }
        if port and not (port.isascii() and port.isdigit()):
            return {"success": False, "message": "Port must be a valid number."}

        report = self.store.rewrite_base_url(host, port)
        try:
            save_network_config(self.store.root, self.store.network)
        except OSError as e:
            return _failed("save network configuration", e)

        output: dict[str, Any] = {
            "success": not report.failed,
            "filesProcessed": report.processed,
            "filesChangedCount": report.changed,
            "filesFailed": len(report.failed),
        }
        if report.failed:
            output["message"] = (
                f"Processed {report.processed} files. {report.changed} files updated. "
                f"{len(report.failed)} files failed to update: {', '.join(report.failed)}. "
                "Check server logs for details."
            )
        else:
            output["message"] = (
                f"Successfully processed {report.processed} files. {report.changed} files "
                "had their URLs updated. Network configuration saved."
            )
        return output

    # --- Read-only ---

    def search(self, query: str) -> list[dict[str, Any]]:
        return [hit.to_dict() for hit in search_directory(self.store, query)]

    def describe_tree(self) -> list[dict[str, Any]]:
        """Every zone with its localities and extension counts."""
        zones: list[dict[str, Any]] = []
        try:
            root_entries = self.store.list_zones()
        except (SchemaError, StoreError) as e:
            logger.error("Cannot read root menu: {}", e)
            return zones
        for zone in root_entries:
            zone_id = id_from_url(zone.url)
            try:
                snapshot = self.store.read_tree(zone_id)
            except (SchemaError, StoreError) as e:
                logger.warning("Zone {} unavailable: {}", zone_id, e)
                zones.append({"id": zone_id, "name": zone.name, "error": str(e)})
                continue
            zones.append(
                {
                    "id": zone_id,
                    "name": zone.name,
                    "localities": [
                        {
                            "id": loc.locality_id,
                            "name": loc.display_name,
                            "branchId": loc.branch_id,
                            "extensions": len(loc.extensions),
                        }
                        for loc in snapshot.localities
                    ],
                    "skipped": list(snapshot.skipped),
                }
            )
        return zones


def set_directory_root(
    new_path: str,
    gate: AuthorizationGate,
    config_file: Path = DIRECTORY_CONFIG_FILE,
) -> dict[str, Any]:
    """Validate and save the directory root used by later runs."""
    if not gate.is_authorized():
        return _denied()
    trimmed = new_path.strip()
    if not trimmed:
        return {"success": False, "message": "Directory path cannot be empty."}
    path = Path(trimmed)
    if not path.is_absolute():
        return {"success": False, "message": "Directory path must be an absolute path."}
    if not path.exists():
        return {
            "success": False,
            "message": f'The provided path "{trimmed}" does not exist.',
        }
    if not path.is_dir():
        return {"success": False, "message": f'The provided path "{trimmed}" is not a directory.'}
    if not (path / MAIN_MENU_FILENAME).is_file():
        return {
            "success": False,
            "message": f'{MAIN_MENU_FILENAME} was not found in "{trimmed}".',
        }
    try:
        save_directory_config(trimmed, config_file)
    except OSError as e:
        return _failed("update directory path", e)
    logger.info("Directory root set to {}", trimmed)
    return {"success": True, "message": f"Directory root path updated to: {trimmed}"}
