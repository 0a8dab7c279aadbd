"""Tests for CSV parsing and import."""

from teldirectory.core.sources.csv_source import import_csv, parent_menu_for_zone, parse_csv
from teldirectory.core.store.tree import (
    DirectoryTreeStore,
    branch_path,
    locality_path,
    main_menu_path,
    zone_path,
)
from teldirectory.models.directory import DirectoryEntry, ExtensionRecord, RowError

HEADER = "Name,Extension,LocalityID,ZoneID"


def _menu_names(store: DirectoryTreeStore, rel: str) -> list[str]:
    menu = store.read_menu(rel)
    assert menu is not None
    return [e.name for e in menu.entries]


class TestParseCsv:
    def test_skips_header_and_blank_lines(self) -> None:
        parsed = parse_csv(f"{HEADER}\n\nAlice,100,Centro,Norte\n  \nBob,101,Centro,Norte\n")

        assert parsed.header_skipped
        assert [(r.row, r.name, r.extension) for r in parsed.rows] == [
            (1, "Alice", "100"),
            (2, "Bob", "101"),
        ]
        assert parsed.errors == []

    def test_header_is_optional(self) -> None:
        parsed = parse_csv("Alice,100,Centro,Norte")

        assert not parsed.header_skipped
        assert len(parsed.rows) == 1

    def test_quoted_fields(self) -> None:
        parsed = parse_csv('"Smith, Alice",100,"Oficina Central",Norte')

        assert parsed.rows[0].name == "Smith, Alice"
        assert parsed.rows[0].locality_name == "Oficina Central"

    def test_invalid_rows_become_errors(self) -> None:
        parsed = parse_csv(
            "\n".join(
                [
                    HEADER,
                    "Alice,100,Centro",
                    "Bob,,Centro,Norte",
                    "Carol,12a,Centro,Norte",
                    "Dave,300,Centro,Norte",
                ]
            )
        )

        assert [r.name for r in parsed.rows] == ["Dave"]
        assert parsed.total_rows == 4
        assert parsed.errors == [
            RowError(
                1,
                "Alice,100,Centro",
                "Row does not have enough columns (expected Name, Extension, LocalityID, ZoneID).",
            ),
            RowError(
                2,
                "Bob,,Centro,Norte",
                "One or more fields (Name, Extension, LocalityID, ZoneID) are empty.",
            ),
            RowError(
                3,
                "Carol,12a,Centro,Norte",
                'Invalid extension number: "12a". Must be numeric.',
            ),
        ]

    def test_unbalanced_quote_fails_only_its_row(self) -> None:
        rows = [f"Person {i},{500 + i},Centro,Norte" for i in range(9)]

        parsed = parse_csv("\n".join(['"Broken,100,Centro,Norte', *rows]))

        assert [r.name for r in parsed.rows] == [f"Person {i}" for i in range(9)]
        assert [r.row for r in parsed.rows] == list(range(2, 11))
        assert [(e.row, e.data) for e in parsed.errors] == [(1, '"Broken,100,Centro,Norte')]
        assert parsed.errors[0].error.startswith("Row could not be parsed")


def test_parent_menu_for_zone() -> None:
    assert parent_menu_for_zone("Norte") == (zone_path("Norte"), True)
    assert parent_menu_for_zone("Zona Metropolitana") == (branch_path("ZonaMetropolitana"), False)


class TestImportCsv:
    def test_one_bad_row_among_ten(self, populated_store: DirectoryTreeStore) -> None:
        rows = [f"Person {i},{500 + i},Centro,Norte" for i in range(9)]
        rows.insert(4, "Broken,abc,Centro,Norte")

        result = import_csv(populated_store, "\n".join([HEADER, *rows]))

        assert result.total_rows == 10
        assert result.processed_rows == 9
        assert result.extensions_added == 9
        assert [e.row for e in result.errors] == [5]
        assert len(result.records) == 9
        assert result.records[0] == ExtensionRecord("500", "Person 0", "csv")

    def test_creates_locality_and_zone(self, populated_store: DirectoryTreeStore) -> None:
        result = import_csv(populated_store, "Zed,900,Oficina Central,Oeste")

        assert result.new_localities_created == 1
        assert result.main_menu_updated_count == 1
        assert _menu_names(populated_store, main_menu_path()) == ["Norte", "Oeste", "Sur"]
        assert _menu_names(populated_store, zone_path("Oeste")) == ["Oficina Central"]
        doc = populated_store.read_directory(locality_path("OficinaCentral"))
        assert doc is not None
        assert doc.title == "Oficina Central"
        assert doc.entries == (DirectoryEntry("Zed", "900"),)

    def test_branch_organized_zone_links_into_branch(self, store: DirectoryTreeStore) -> None:
        result = import_csv(store, "Zed,900,Lomas,Zona Metropolitana")

        assert result.processed_rows == 1
        assert result.main_menu_updated_count == 0
        assert _menu_names(store, branch_path("ZonaMetropolitana")) == ["Lomas"]
        assert not store.exists(main_menu_path())

    def test_existing_locality_reused(self, populated_store: DirectoryTreeStore) -> None:
        result = import_csv(populated_store, "Zed,900,Centro,Sur")

        assert result.new_localities_created == 0
        assert result.parent_menus_updated == 0
        assert _menu_names(populated_store, zone_path("Sur")) == ["Sucursal A"]
        doc = populated_store.read_directory(locality_path("Centro"))
        assert doc is not None
        assert DirectoryEntry("Zed", "900") in doc.entries

    def test_known_number_is_left_for_reconciliation(
        self, populated_store: DirectoryTreeStore
    ) -> None:
        result = import_csv(populated_store, "Alice,100,Centro,Norte\nAlicia,101,Centro,Norte")

        assert result.processed_rows == 2
        assert result.extensions_added == 0
        assert [r.name for r in result.records] == ["Alice", "Alicia"]
        doc = populated_store.read_directory(locality_path("Centro"))
        assert doc is not None
        assert doc.entries == (DirectoryEntry("Alice", "100"), DirectoryEntry("Bob", "101"))

    def test_malformed_locality_fails_only_its_row(
        self, populated_store: DirectoryTreeStore
    ) -> None:
        populated_store._abs(locality_path("Puerto")).write_text("garbage")

        result = import_csv(populated_store, "Zed,900,Puerto,Norte\nYan,901,Centro,Norte")

        assert result.processed_rows == 1
        assert [e.row for e in result.errors] == [1]
        assert "department/Puerto.xml" in result.errors[0].error

    def test_locality_id_collision_fails_only_its_row(
        self, populated_store: DirectoryTreeStore
    ) -> None:
        result = import_csv(populated_store, "Zed,900,Centro.,Norte\nYan,901,Centro,Norte")

        assert result.processed_rows == 1
        assert [e.row for e in result.errors] == [1]
        assert 'already belongs to "Centro"' in result.errors[0].error

    def test_details_shape(self, store: DirectoryTreeStore) -> None:
        result = import_csv(store, f"{HEADER}\nZed,900,Lomas,Oeste\nbad")

        assert result.details() == {
            "processedRows": 1,
            "totalRows": 2,
            "extensionsAdded": 1,
            "newLocalitiesCreated": 1,
            "parentMenusUpdated": 1,
            "mainMenuUpdatedCount": 1,
            "errors": [
                {
                    "row": 2,
                    "data": "bad",
                    "error": "Row does not have enough columns "
                    "(expected Name, Extension, LocalityID, ZoneID).",
                }
            ],
        }
