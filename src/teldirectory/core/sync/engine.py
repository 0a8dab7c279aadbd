"""Reconciliation of external extension records against the local directory tree.

Records from any source (CSV rows, LDAP users, XML feeds) are grouped by
extension number. Numbers with a single agreed name rename the matching local
entries; numbers with disagreeing names are reported as conflicts; numbers no
locality lists are collected into a synthetic "missing extensions" locality
linked from the root menu.
"""

from collections.abc import Iterable
from dataclasses import replace
from urllib.parse import urlparse

from loguru import logger

from teldirectory.config import (
    DEFAULT_MENU_PROMPT,
    DEFAULT_MENU_TITLE,
    MISSING_EXTENSIONS_ID,
    MISSING_EXTENSIONS_NAME,
    MISSING_EXTENSIONS_PROMPT,
)
from teldirectory.core.documents.cisco_xml import sort_directory_entries
from teldirectory.core.store.tree import (
    DirectoryTreeStore,
    is_numeric_extension,
    locality_path,
    main_menu_path,
)
from teldirectory.errors import SchemaError, StoreError
from teldirectory.models.directory import (
    Contribution,
    DirectoryDocument,
    DirectoryEntry,
    ExtensionRecord,
    ItemType,
    MenuEntry,
    ReconciliationPlan,
    SyncResult,
)


def aggregate_records(records: Iterable[ExtensionRecord]) -> dict[str, tuple[Contribution, ...]]:
    """Group records by number, keeping distinct (name, source) pairs in first-seen order.

    Records with an empty or non-numeric number, or an empty name, are dropped.
    """
    grouped: dict[str, dict[Contribution, None]] = {}
    dropped = 0
    for record in records:
        number = record.number.strip()
        name = record.name.strip()
        if not name or not is_numeric_extension(number):
            dropped += 1
            continue
        grouped.setdefault(number, {})[Contribution(name=name, source_id=record.source_id)] = None
    if dropped:
        logger.debug("Ignored {} records without a valid name and number", dropped)
    return {number: tuple(contributions) for number, contributions in grouped.items()}


def classify(
    aggregated: dict[str, tuple[Contribution, ...]],
) -> tuple[dict[str, Contribution], dict[str, tuple[Contribution, ...]]]:
    """Split aggregated numbers into (unique, conflicted)."""
    unique: dict[str, Contribution] = {}
    conflicted: dict[str, tuple[Contribution, ...]] = {}
    for number, contributions in aggregated.items():
        if len({c.name for c in contributions}) > 1:
            conflicted[number] = contributions
        else:
            unique[number] = contributions[0]
    return unique, conflicted


def build_plan(
    records: Iterable[ExtensionRecord],
    local_documents: Iterable[DirectoryDocument],
) -> ReconciliationPlan:
    """Compute the merge plan without touching the tree.

    to_update holds every unique external number whose name differs from at
    least one local entry with that telephone.
    """
    unique, conflicted = classify(aggregate_records(records))
    seen: set[str] = set()
    to_update: dict[str, str] = {}
    for doc in local_documents:
        for entry in doc.entries:
            seen.add(entry.telephone)
            external = unique.get(entry.telephone)
            if external is not None and entry.name != external.name:
                to_update[entry.telephone] = external.name
    missing = {number: c for number, c in unique.items() if number not in seen}
    return ReconciliationPlan(to_update=to_update, conflicted=conflicted, missing_locally=missing)


def _rename_entries(
    doc: DirectoryDocument, unique: dict[str, Contribution]
) -> tuple[DirectoryDocument, int]:
    renamed = 0
    entries: list[DirectoryEntry] = []
    for entry in doc.entries:
        external = unique.get(entry.telephone)
        if external is not None and entry.name != external.name:
            entry = DirectoryEntry(name=external.name, telephone=entry.telephone)
            renamed += 1
        if entry not in entries:
            entries.append(entry)
    if not renamed:
        return doc, 0
    return replace(doc, entries=sort_directory_entries(entries)), renamed


def source_label(source_id: str) -> str:
    """Short label for a source: the hostname of a URL, else the id itself."""
    hostname = urlparse(source_id).hostname
    return hostname or source_id


def _missing_document(missing: dict[str, Contribution]) -> DirectoryDocument:
    entries = [
        DirectoryEntry(name=f"{c.name} (Source: {source_label(c.source_id)})", telephone=number)
        for number, c in missing.items()
    ]
    return DirectoryDocument(
        title=MISSING_EXTENSIONS_NAME,
        prompt=MISSING_EXTENSIONS_PROMPT,
        entries=sort_directory_entries(entries),
    )


def _is_missing_entry(entry: MenuEntry) -> bool:
    return entry.name == MISSING_EXTENSIONS_NAME or entry.url.endswith(
        f"/{locality_path(MISSING_EXTENSIONS_ID)}"
    )


def reconcile(
    store: DirectoryTreeStore,
    records: Iterable[ExtensionRecord],
    *,
    manage_missing: bool = True,
) -> SyncResult:
    """Apply external records to the tree and report what happened.

    Write failures are collected per file; they never stop the run. The result
    is unsuccessful only if at least one file failed to write.

    With manage_missing, the missing-extensions locality is rewritten from this
    run's missing numbers, or removed when nothing is missing. Without it the
    missing numbers are only reported and that locality is left untouched.
    """
    unique, conflicted = classify(aggregate_records(records))
    logger.info(
        "Reconciling {} unique and {} conflicted extension numbers",
        len(unique),
        len(conflicted),
    )

    updated_count = 0
    files_modified = 0
    files_skipped = 0
    failed_files: list[str] = []
    seen: set[str] = set()

    for locality_id in store.list_directory_ids():
        if locality_id == MISSING_EXTENSIONS_ID:
            continue
        rel = locality_path(locality_id)
        try:
            doc = store.read_directory(rel)
        except (SchemaError, StoreError) as e:
            logger.warning("Skipping unreadable locality {}: {}", rel, e)
            files_skipped += 1
            continue
        if doc is None:
            continue

        seen.update(entry.telephone for entry in doc.entries)
        new_doc, renamed = _rename_entries(doc, unique)
        if not renamed:
            continue
        try:
            store.write_directory(rel, new_doc)
        except StoreError as e:
            logger.error("Failed to update {}: {}", rel, e)
            failed_files.append(rel)
            continue
        updated_count += renamed
        files_modified += 1
        logger.debug("Renamed {} entries in {}", renamed, rel)

    missing = {number: c for number, c in unique.items() if number not in seen}
    missing_rel = locality_path(MISSING_EXTENSIONS_ID)
    if not manage_missing:
        logger.debug("Leaving {} untouched", missing_rel)
    elif missing:
        try:
            if store.write_directory(missing_rel, _missing_document(missing)):
                files_modified += 1
        except StoreError as e:
            logger.error("Failed to write {}: {}", missing_rel, e)
            failed_files.append(missing_rel)
        try:
            store.ensure_menu_entry(
                main_menu_path(),
                MISSING_EXTENSIONS_NAME,
                store.child_url(ItemType.LOCALITY, MISSING_EXTENSIONS_ID),
                title=DEFAULT_MENU_TITLE,
                prompt=DEFAULT_MENU_PROMPT,
                replace_existing=True,
            )
        except (SchemaError, StoreError) as e:
            logger.error("Failed to link missing extensions from {}: {}", main_menu_path(), e)
            failed_files.append(main_menu_path())
    else:
        try:
            if store.delete_document(missing_rel):
                logger.info("Removed {}, no extensions are missing", missing_rel)
        except StoreError as e:
            logger.warning("Could not remove {}: {}", missing_rel, e)
        try:
            store.remove_menu_entries(main_menu_path(), _is_missing_entry)
        except (SchemaError, StoreError) as e:
            logger.error("Failed to unlink missing extensions from {}: {}", main_menu_path(), e)
            failed_files.append(main_menu_path())

    result = SyncResult(
        success=not failed_files,
        message=sync_message(
            updated_count,
            files_modified,
            conflicted,
            missing,
            failed_files,
            listed=manage_missing,
        ),
        updated_count=updated_count,
        files_modified=files_modified,
        files_failed_to_update=len(failed_files),
        conflicted_extensions=conflicted,
        missing_extensions=missing,
        failed_files=failed_files,
        details={"filesSkipped": files_skipped} if files_skipped else None,
    )
    logger.info(
        "Sync finished: {} names updated, {} files modified, {} failed",
        updated_count,
        files_modified,
        len(failed_files),
    )
    return result


def sync_message(
    updated_count: int,
    files_modified: int,
    conflicted: dict[str, tuple[Contribution, ...]],
    missing: dict[str, Contribution],
    failed_files: list[str],
    *,
    listed: bool = True,
) -> str:
    parts = [f"Sync complete. {updated_count} names updated, {files_modified} files modified."]
    if conflicted:
        parts.append(
            f"Found {len(conflicted)} conflicted extension numbers (not updated, see details)."
        )
    if missing and not listed:
        parts.append(f"Found {len(missing)} extensions in sources that are missing locally.")
    elif missing:
        parts.append(
            f"Listed {len(missing)} extensions found in sources but missing locally "
            f"under '{MISSING_EXTENSIONS_NAME}'."
        )
    else:
        parts.append("No extensions from sources were found to be missing locally.")
    if failed_files:
        unique_failed = list(dict.fromkeys(failed_files))
        parts.append(
            f"Failed to update {len(failed_files)} files: {', '.join(unique_failed)}. "
            "Check server logs for details."
        )
    return " ".join(parts)
