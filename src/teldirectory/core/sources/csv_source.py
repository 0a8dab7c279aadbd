"""CSV import: parse rows into extension records and create missing localities."""

import csv
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from teldirectory.config import (
    BRANCH_ORGANIZED_ZONES,
    DEFAULT_MENU_PROMPT,
    DEFAULT_MENU_TITLE,
)
from teldirectory.core.documents.cisco_xml import derive_id
from teldirectory.core.store.tree import (
    DirectoryTreeStore,
    branch_path,
    is_numeric_extension,
    locality_path,
    main_menu_path,
    zone_path,
)
from teldirectory.errors import TelDirectoryError
from teldirectory.models.directory import ExtensionRecord, ItemType, RowError

EXPECTED_HEADER = ("name", "extension", "localityid", "zoneid")
CSV_SOURCE_ID = "csv"


@dataclass(frozen=True)
class CsvRow:
    row: int
    name: str
    extension: str
    locality_name: str
    zone_name: str
    line: str

    def to_record(self, source_id: str = CSV_SOURCE_ID) -> ExtensionRecord:
        return ExtensionRecord(number=self.extension, name=self.name, source_id=source_id)


@dataclass
class CsvParseResult:
    rows: list[CsvRow] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    header_skipped: bool = False

    @property
    def total_rows(self) -> int:
        return len(self.rows) + len(self.errors)


@dataclass
class CsvImportResult:
    """Structural side effects and row outcomes of one CSV import."""

    records: list[ExtensionRecord] = field(default_factory=list)
    total_rows: int = 0
    processed_rows: int = 0
    extensions_added: int = 0
    new_localities_created: int = 0
    parent_menus_updated: int = 0
    main_menu_updated_count: int = 0
    errors: list[RowError] = field(default_factory=list)

    def details(self) -> dict[str, Any]:
        return {
            "processedRows": self.processed_rows,
            "totalRows": self.total_rows,
            "extensionsAdded": self.extensions_added,
            "newLocalitiesCreated": self.new_localities_created,
            "parentMenusUpdated": self.parent_menus_updated,
            "mainMenuUpdatedCount": self.main_menu_updated_count,
            "errors": [e.to_dict() for e in self.errors],
        }


def _is_header(columns: list[str]) -> bool:
    lowered = [c.lower() for c in columns]
    return len(lowered) >= len(EXPECTED_HEADER) and all(
        expected in lowered[i] for i, expected in enumerate(EXPECTED_HEADER)
    )


def _row_error(columns: list[str]) -> str | None:
    if len(columns) < 4:
        return "Row does not have enough columns (expected Name, Extension, LocalityID, ZoneID)."
    if not all(columns[:4]):
        return "One or more fields (Name, Extension, LocalityID, ZoneID) are empty."
    if not is_numeric_extension(columns[1]):
        return f'Invalid extension number: "{columns[1]}". Must be numeric.'
    return None


def parse_csv(text: str) -> CsvParseResult:
    """Parse comma-delimited import text.

    Blank lines are ignored. The first line is skipped when it looks like the
    ``name,extension,localityid,zoneid`` header. Rows are numbered from 1
    counting data rows only; invalid rows become RowErrors, never exceptions.
    """
    result = CsvParseResult()
    lines = [line.strip() for line in text.splitlines()]
    lines = [line for line in lines if line]
    row_number = 0
    for index, line in enumerate(lines):
        # One reader per line: an unbalanced quote must not swallow the following rows.
        error: str | None = None
        try:
            columns = [c.strip() for c in next(csv.reader([line], strict=True), [])]
        except csv.Error as e:
            columns = []
            error = f"Row could not be parsed: {e}."
        if error is None and index == 0 and _is_header(columns):
            result.header_skipped = True
            logger.debug("CSV header row detected and skipped")
            continue
        row_number += 1

        if error is None:
            error = _row_error(columns)

        if error is not None:
            logger.warning("CSV row {}: {}", row_number, error)
            result.errors.append(RowError(row=row_number, data=line, error=error))
            continue
        name, extension, locality_name, zone_name = columns[:4]
        result.rows.append(
            CsvRow(
                row=row_number,
                name=name,
                extension=extension,
                locality_name=locality_name,
                zone_name=zone_name,
                line=line,
            )
        )
    return result


def parent_menu_for_zone(zone_name: str) -> tuple[str, bool]:
    """Return (menu path, is_zone_menu) where a zone's imported localities are linked."""
    branch_id = BRANCH_ORGANIZED_ZONES.get(derive_id(zone_name).lower())
    if branch_id is not None:
        return branch_path(branch_id), False
    return zone_path(derive_id(zone_name)), True


def _import_row(store: DirectoryTreeStore, row: CsvRow, result: CsvImportResult) -> str | None:
    """Create the locality if needed and add the extension. Returns the zone name
    when a new zone menu had to be created."""
    parent_rel, is_zone_menu = parent_menu_for_zone(row.zone_name)
    link = store.ensure_locality(parent_rel, row.locality_name, parent_title=row.zone_name)
    new_zone = None
    if link.created:
        result.new_localities_created += 1
        if link.parent_updated:
            result.parent_menus_updated += 1
        if link.parent_created and is_zone_menu:
            new_zone = row.zone_name

    doc = store.read_directory(locality_path(link.locality_id))
    entries = doc.entries if doc else ()
    if any(e.name == row.name and e.telephone == row.extension for e in entries):
        logger.debug("Extension {} / {} already in {}", row.name, row.extension, link.locality_id)
    elif any(e.telephone == row.extension for e in entries):
        logger.debug("Extension {} already in {}, leaving name to sync", row.extension, link.locality_id)
    else:
        store.upsert_extension(link.locality_id, row.name, row.extension)
        result.extensions_added += 1
    return new_zone


def import_csv(store: DirectoryTreeStore, text: str) -> CsvImportResult:
    """Add every valid row to the tree, creating localities and zone menus on demand.

    A failing row is recorded and the next row is processed. Newly created zone
    menus are linked from the root menu once all rows are done.
    """
    parsed = parse_csv(text)
    result = CsvImportResult(total_rows=parsed.total_rows, errors=list(parsed.errors))
    new_zones: dict[str, None] = {}

    for row in parsed.rows:
        try:
            new_zone = _import_row(store, row, result)
        except TelDirectoryError as e:
            logger.error("CSV row {} failed: {}", row.row, e)
            result.errors.append(RowError(row=row.row, data=row.line, error=str(e)))
            continue
        if new_zone is not None:
            new_zones[new_zone] = None
        result.processed_rows += 1
        result.records.append(row.to_record())

    for zone_name in new_zones:
        try:
            _, changed = store.ensure_menu_entry(
                main_menu_path(),
                zone_name,
                store.child_url(ItemType.ZONE, derive_id(zone_name)),
                title=DEFAULT_MENU_TITLE,
                prompt=DEFAULT_MENU_PROMPT,
            )
        except TelDirectoryError as e:
            logger.error("Failed to link zone {!r} from the root menu: {}", zone_name, e)
            result.errors.append(
                RowError(row=0, data="MainMenu Update", error=f"Failed to update MainMenu.xml: {e}")
            )
            continue
        if changed:
            result.main_menu_updated_count += 1

    result.errors.sort(key=lambda e: e.row)
    logger.info(
        "CSV import: {} of {} rows processed, {} extensions added, {} localities created",
        result.processed_rows,
        result.total_rows,
        result.extensions_added,
        result.new_localities_created,
    )
    return result
