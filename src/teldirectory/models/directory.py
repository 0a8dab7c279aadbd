"""Domain models for the telephone directory."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ItemType(str, Enum):
    """Kind of child a menu entry points at."""

    ZONE = "zone"
    BRANCH = "branch"
    LOCALITY = "locality"


@dataclass(frozen=True)
class MenuEntry:
    name: str
    url: str


@dataclass(frozen=True)
class MenuDocument:
    """A CiscoIPPhoneMenu: root menu, zone menu or branch menu."""

    title: str | None = None
    prompt: str | None = None
    entries: tuple[MenuEntry, ...] = ()


@dataclass(frozen=True)
class DirectoryEntry:
    name: str
    telephone: str


@dataclass(frozen=True)
class DirectoryDocument:
    """A CiscoIPPhoneDirectory: the extension list of one locality."""

    title: str | None = None
    prompt: str | None = None
    entries: tuple[DirectoryEntry, ...] = ()


@dataclass(frozen=True)
class ExtensionRecord:
    """An extension as reported by an external source.

    source_id names the feed URL, LDAP server or import batch; it is used for
    conflict reporting only, never for identity.
    """

    number: str
    name: str
    source_id: str


@dataclass(frozen=True)
class Contribution:
    name: str
    source_id: str


@dataclass(frozen=True)
class ReconciliationPlan:
    """Merge plan computed from external records and the local tree.

    A number appears in at most one of the three maps.
    """

    to_update: dict[str, str] = field(default_factory=dict)
    conflicted: dict[str, tuple[Contribution, ...]] = field(default_factory=dict)
    missing_locally: dict[str, Contribution] = field(default_factory=dict)


@dataclass(frozen=True)
class LocalitySnapshot:
    locality_id: str
    display_name: str
    extensions: tuple[DirectoryEntry, ...]
    branch_id: str | None = None
    branch_name: str | None = None


@dataclass(frozen=True)
class ZoneSnapshot:
    """Flattened view of one zone: every locality reachable from its menu."""

    zone_id: str
    title: str | None
    localities: tuple[LocalitySnapshot, ...]
    skipped: tuple[str, ...] = ()


@dataclass(frozen=True)
class RowError:
    """A CSV row or LDAP entry that could not be processed."""

    row: int
    data: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"row": self.row, "data": self.data, "error": self.error}


@dataclass
class SyncResult:
    """Outcome of a reconciliation run, shaped for callers."""

    success: bool
    message: str
    updated_count: int = 0
    files_modified: int = 0
    files_failed_to_update: int = 0
    conflicted_extensions: dict[str, tuple[Contribution, ...]] = field(default_factory=dict)
    missing_extensions: dict[str, Contribution] = field(default_factory=dict)
    failed_files: list[str] = field(default_factory=list)
    error: str | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        output: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "updatedCount": self.updated_count,
            "filesModified": self.files_modified,
            "filesFailedToUpdate": self.files_failed_to_update,
            "conflictedExtensions": [
                {
                    "number": number,
                    "conflicts": [
                        {"name": c.name, "sourceFeed": c.source_id} for c in contributions
                    ],
                }
                for number, contributions in self.conflicted_extensions.items()
            ],
            "missingExtensions": [
                {"number": number, "name": c.name, "sourceFeed": c.source_id}
                for number, c in self.missing_extensions.items()
            ],
        }
        if self.error is not None:
            output["error"] = self.error
        if self.details is not None:
            output["details"] = self.details
        return output


@dataclass(frozen=True)
class MatchedExtension:
    name: str
    number: str
    matched_on: str  # "extensionName" or "extensionNumber"


@dataclass(frozen=True)
class SearchHit:
    """A locality that matched a search, by its own name or by its extensions."""

    locality_id: str
    locality_name: str
    zone_id: str
    zone_name: str
    locality_name_match: bool
    matching_extensions: tuple[MatchedExtension, ...] = ()
    branch_id: str | None = None
    branch_name: str | None = None

    @property
    def full_path(self) -> str:
        if self.branch_id:
            return f"/{self.zone_id}/branches/{self.branch_id}/localities/{self.locality_id}"
        return f"/{self.zone_id}/localities/{self.locality_id}"

    def to_dict(self) -> dict[str, Any]:
        output: dict[str, Any] = {
            "localityId": self.locality_id,
            "localityName": self.locality_name,
            "zoneId": self.zone_id,
            "zoneName": self.zone_name,
            "fullPath": self.full_path,
            "localityNameMatch": self.locality_name_match,
            "matchingExtensions": [
                {"name": m.name, "number": m.number, "matchedOn": m.matched_on}
                for m in self.matching_extensions
            ],
        }
        if self.branch_id:
            output["branchId"] = self.branch_id
            output["branchName"] = self.branch_name
        return output
