"""File-system backed store for the zone -> branch -> locality tree.

This is the only code that touches the XML files. Layout under the root:

    MainMenu.xml                 root menu, entries point at zones
    zonebranch/<zoneId>.xml      zone menu, entries point at branches or localities
    branch/<branchId>.xml        branch menu, entries point at localities
    department/<localityId>.xml  locality extension list

Every write replaces a single file atomically; a file whose contents would not
change is left untouched.
"""

import os
import tempfile
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from urllib.parse import urlparse, urlunparse

from loguru import logger

from teldirectory.config import (
    BRANCH_DIR,
    BRANCH_PROMPT,
    DEFAULT_MENU_PROMPT,
    DEFAULT_MENU_TITLE,
    DEPARTMENT_DIR,
    LOCALITY_PROMPT,
    MAIN_MENU_FILENAME,
    ZONE_DIR,
    ZONE_PROMPT,
    NetworkConfig,
)
from teldirectory.core.documents.cisco_xml import (
    derive_id,
    id_from_url,
    item_type_from_url,
    parse_directory_document,
    parse_menu_document,
    sanitize_id,
    serialize_directory_document,
    serialize_menu_document,
    sort_directory_entries,
    sort_menu_entries,
)
from teldirectory.errors import (
    DuplicateExtensionError,
    DuplicateNameError,
    IdCollisionError,
    NotFoundError,
    SchemaError,
    StoreError,
    ValidationError,
)
from teldirectory.models.directory import (
    DirectoryDocument,
    DirectoryEntry,
    ItemType,
    LocalitySnapshot,
    MenuDocument,
    MenuEntry,
    ZoneSnapshot,
)

_CHILD_DIRS = {
    ItemType.ZONE: ZONE_DIR,
    ItemType.BRANCH: BRANCH_DIR,
    ItemType.LOCALITY: DEPARTMENT_DIR,
}

# Which parent menus may hold which child types.
_ALLOWED_PARENT_DIRS = {
    ItemType.ZONE: {""},
    ItemType.BRANCH: {ZONE_DIR},
    ItemType.LOCALITY: {ZONE_DIR, BRANCH_DIR},
}


@dataclass
class DeleteReport:
    """Files touched by a (possibly cascading) delete."""

    removed: list[str] = field(default_factory=list)
    already_missing: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class LocalityLink:
    """What ensure_locality had to do to make a locality exist and be reachable."""

    locality_id: str
    created: bool
    parent_created: bool = False
    parent_updated: bool = False


@dataclass(frozen=True)
class MergeReport:
    """Outcome of merging or moving a batch of entries into a locality."""

    added: int
    already_present: int
    invalid: tuple[DirectoryEntry, ...] = ()


@dataclass(frozen=True)
class UrlRewriteReport:
    processed: int
    changed: int
    failed: tuple[str, ...]


def main_menu_path() -> str:
    return MAIN_MENU_FILENAME


def zone_path(zone_id: str) -> str:
    return f"{ZONE_DIR}/{sanitize_id(zone_id)}.xml"


def branch_path(branch_id: str) -> str:
    return f"{BRANCH_DIR}/{sanitize_id(branch_id)}.xml"


def locality_path(locality_id: str) -> str:
    return f"{DEPARTMENT_DIR}/{sanitize_id(locality_id)}.xml"


def child_path(item_type: ItemType, item_id: str) -> str:
    return f"{_CHILD_DIRS[item_type]}/{sanitize_id(item_id)}.xml"


def is_numeric_extension(telephone: str) -> bool:
    return telephone.isascii() and telephone.isdigit()


class DirectoryTreeStore:
    """Repository over the on-disk directory tree.

    Args:
        root: Directory holding MainMenu.xml and the sub-directories.
        network: Host/port written into the absolute URLs of new menu entries.
        create: Create the root directory if it does not exist.
    """

    def __init__(
        self,
        root: str | Path,
        network: NetworkConfig | None = None,
        *,
        create: bool = True,
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        self.network = network or NetworkConfig()
        if not self.root.is_dir():
            if not create:
                msg = f"Directory root {str(self.root)!r} not found"
                raise ValueError(msg)
            self.root.mkdir(parents=True, exist_ok=True)
        logger.debug("Store ready, root {}, base url {}", self.root, self.network.base_url)

    # --- Low-level file access ---

    def _abs(self, rel: str) -> Path:
        if Path(rel).is_absolute():
            msg = f"must be relative: {rel!r}"
            raise ValueError(msg)
        path = (self.root / rel).resolve()
        if not str(path).startswith(str(self.root) + os.sep):
            msg = f"Path escapes directory root: {rel!r}"
            raise ValueError(msg)
        if path.suffix != ".xml":
            msg = f"Not a directory document: {rel!r}"
            raise ValueError(msg)
        return path

    def exists(self, rel: str) -> bool:
        return self._abs(rel).is_file()

    def _read_text(self, rel: str) -> str | None:
        try:
            return self._abs(rel).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            msg = f"Cannot read {rel!r}: {e}"
            raise StoreError(msg, path=rel) from e

    def _write_text(self, rel: str, contents: str) -> bool:
        """Atomically replace a file. Returns False when contents were already identical."""
        path = self._abs(rel)
        try:
            if path.read_text(encoding="utf-8") == contents:
                return False
        except (FileNotFoundError, UnicodeDecodeError):
            pass
        except OSError as e:
            logger.debug("Could not compare existing {}: {}", rel, e)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        except OSError as e:
            msg = f"Failed to write {rel!r}: {e}"
            raise StoreError(msg, path=rel) from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(contents)
            os.replace(tmp_name, path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            msg = f"Failed to write {rel!r}: {e}"
            raise StoreError(msg, path=rel) from e
        logger.debug("Wrote {}", rel)
        return True

    def read_menu(self, rel: str) -> MenuDocument | None:
        """Read a menu document, None if the file does not exist.

        Raises:
            SchemaError: The file exists but is not a valid menu.
            StoreError: The file exists but cannot be read.
        """
        raw = self._read_text(rel)
        if raw is None:
            return None
        try:
            return parse_menu_document(raw)
        except SchemaError as e:
            msg = f"{rel}: {e}"
            raise SchemaError(msg) from e

    def read_directory(self, rel: str) -> DirectoryDocument | None:
        """Read a directory document, None if the file does not exist."""
        raw = self._read_text(rel)
        if raw is None:
            return None
        try:
            return parse_directory_document(raw)
        except SchemaError as e:
            msg = f"{rel}: {e}"
            raise SchemaError(msg) from e

    def write_menu(self, rel: str, doc: MenuDocument) -> bool:
        return self._write_text(rel, serialize_menu_document(doc))

    def write_directory(self, rel: str, doc: DirectoryDocument) -> bool:
        return self._write_text(rel, serialize_directory_document(doc))

    def delete_document(self, rel: str) -> bool:
        """Remove a file. Returns False if it was already gone."""
        try:
            self._abs(rel).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            msg = f"Failed to delete {rel!r}: {e}"
            raise StoreError(msg, path=rel) from e
        logger.debug("Deleted {}", rel)
        return True

    def _require_menu(self, rel: str) -> MenuDocument:
        try:
            doc = self.read_menu(rel)
        except SchemaError as e:
            msg = f"Parent menu {rel} is invalid: {e}"
            raise NotFoundError(msg, path=rel) from e
        if doc is None:
            msg = f"Parent menu {rel} not found"
            raise NotFoundError(msg, path=rel)
        return doc

    def child_url(self, item_type: ItemType, item_id: str) -> str:
        return f"{self.network.base_url}/{child_path(item_type, item_id)}"

    # --- Listing ---

    def list_zones(self) -> tuple[MenuEntry, ...]:
        """Root menu entries that point at zone menus."""
        doc = self.read_menu(main_menu_path())
        if doc is None:
            return ()
        return tuple(e for e in doc.entries if item_type_from_url(e.url) is ItemType.ZONE)

    def list_directory_ids(self) -> list[str]:
        """Ids of every locality file on disk, linked or not."""
        department = self.root / DEPARTMENT_DIR
        if not department.is_dir():
            return []
        return sorted(p.stem for p in department.glob("*.xml") if p.is_file())

    def iter_directories(
        self, exclude: frozenset[str] = frozenset()
    ) -> Iterator[tuple[str, DirectoryDocument]]:
        """Yield (locality_id, document) for every readable locality file.

        Unreadable or malformed files are logged and skipped.
        """
        for locality_id in self.list_directory_ids():
            if locality_id in exclude:
                continue
            rel = locality_path(locality_id)
            try:
                doc = self.read_directory(rel)
            except (SchemaError, StoreError) as e:
                logger.warning("Skipping {}: {}", rel, e)
                continue
            if doc is not None:
                yield locality_id, doc

    def read_tree(self, zone_id: str) -> ZoneSnapshot:
        """Flatten a zone into its localities (direct ones and those under branches).

        Unreadable or malformed branch/locality files are logged and skipped.

        Raises:
            NotFoundError: The zone menu itself is missing or invalid.
        """
        zone_rel = zone_path(zone_id)
        zone = self._require_menu(zone_rel)
        localities: list[LocalitySnapshot] = []
        skipped: list[str] = []

        def add_locality(entry: MenuEntry, branch: MenuEntry | None) -> None:
            locality_id = id_from_url(entry.url)
            rel = locality_path(locality_id)
            try:
                doc = self.read_directory(rel)
            except (SchemaError, StoreError) as e:
                logger.warning("Skipping locality {}: {}", rel, e)
                skipped.append(rel)
                return
            if doc is None:
                logger.warning("Skipping locality {}: file not found", rel)
                skipped.append(rel)
                return
            localities.append(
                LocalitySnapshot(
                    locality_id=locality_id,
                    display_name=doc.title or entry.name,
                    extensions=doc.entries,
                    branch_id=id_from_url(branch.url) if branch else None,
                    branch_name=branch.name if branch else None,
                )
            )

        for entry in zone.entries:
            item_type = item_type_from_url(entry.url)
            if item_type is ItemType.LOCALITY:
                add_locality(entry, None)
            elif item_type is ItemType.BRANCH:
                branch_id = id_from_url(entry.url)
                rel = branch_path(branch_id)
                try:
                    branch = self.read_menu(rel)
                except (SchemaError, StoreError) as e:
                    logger.warning("Skipping branch {}: {}", rel, e)
                    skipped.append(rel)
                    continue
                if branch is None:
                    logger.warning("Skipping branch {}: file not found", rel)
                    skipped.append(rel)
                    continue
                for branch_entry in branch.entries:
                    add_locality(branch_entry, entry)
            else:
                logger.warning(
                    "Unknown URL type in {} for {!r}: {}", zone_rel, entry.name, entry.url
                )

        return ZoneSnapshot(
            zone_id=sanitize_id(zone_id),
            title=zone.title,
            localities=tuple(localities),
            skipped=tuple(skipped),
        )

    # --- Menu structure ---

    def _check_parent(self, parent_rel: str, item_type: ItemType) -> None:
        parent_dir = str(Path(parent_rel).parent).replace(".", "")
        if parent_dir not in _ALLOWED_PARENT_DIRS[item_type]:
            msg = f"A {item_type.value} cannot be placed under {parent_rel}"
            raise ValidationError(msg)

    def _new_child_document(
        self, item_type: ItemType, title: str
    ) -> MenuDocument | DirectoryDocument:
        if item_type is ItemType.LOCALITY:
            return DirectoryDocument(title=title, prompt=LOCALITY_PROMPT)
        prompt = BRANCH_PROMPT if item_type is ItemType.BRANCH else ZONE_PROMPT
        return MenuDocument(title=title, prompt=prompt)

    def _existing_title(self, item_type: ItemType, rel: str) -> str | None:
        try:
            if item_type is ItemType.LOCALITY:
                doc = self.read_directory(rel)
            else:
                doc = self.read_menu(rel)
        except (SchemaError, StoreError):
            return ""
        return None if doc is None else (doc.title or "")

    def _write_child(self, rel: str, doc: MenuDocument | DirectoryDocument) -> bool:
        if isinstance(doc, DirectoryDocument):
            return self.write_directory(rel, doc)
        return self.write_menu(rel, doc)

    def add_child(self, parent_rel: str, item_name: str, item_type: ItemType) -> str:
        """Create an empty child document and link it from the parent menu.

        The root menu is created on demand when adding a zone; every other
        parent must already exist.

        Returns:
            The derived id of the new child.

        Raises:
            DuplicateNameError: The parent already has an entry with this name or id.
            IdCollisionError: The derived id names an existing file of another item.
            NotFoundError: The parent menu is missing or invalid.
        """
        item_name = item_name.strip()
        if not item_name:
            msg = f"{item_type.value.capitalize()} name cannot be empty"
            raise ValidationError(msg)
        self._check_parent(parent_rel, item_type)

        if item_type is ItemType.ZONE and not self.exists(parent_rel):
            parent = MenuDocument(title=DEFAULT_MENU_TITLE, prompt=DEFAULT_MENU_PROMPT)
        else:
            parent = self._require_menu(parent_rel)

        new_id = derive_id(item_name)
        if any(id_from_url(e.url) == new_id or e.name == item_name for e in parent.entries):
            msg = f'An item with name "{item_name}" or ID "{new_id}" already exists in {parent_rel}'
            raise DuplicateNameError(msg, path=parent_rel)

        rel = child_path(item_type, new_id)
        existing_title = self._existing_title(item_type, rel)
        if existing_title is None:
            self._write_child(rel, self._new_child_document(item_type, item_name))
        elif existing_title != item_name:
            msg = (
                f'"{item_name}" derives ID "{new_id}", which already belongs to '
                f'"{existing_title}" ({rel})'
            )
            raise IdCollisionError(msg, path=rel)
        else:
            logger.info("Relinking existing {} {} into {}", item_type.value, rel, parent_rel)

        entries = sort_menu_entries(
            [*parent.entries, MenuEntry(name=item_name, url=self.child_url(item_type, new_id))]
        )
        self.write_menu(parent_rel, replace(parent, entries=entries))
        logger.info("Added {} {!r} ({}) to {}", item_type.value, item_name, new_id, parent_rel)
        return new_id

    def rename_child(
        self, parent_rel: str, old_id: str, new_name: str, item_type: ItemType
    ) -> str:
        """Rename a child: update the parent entry, move the file if its id changes
        and set the child's own title.

        A child file that is already gone is recreated empty under the new id
        (logged as a warning, not an error).

        Returns:
            The (possibly unchanged) id of the child.
        """
        new_name = new_name.strip()
        if not new_name:
            msg = f"{item_type.value.capitalize()} name cannot be empty"
            raise ValidationError(msg)
        self._check_parent(parent_rel, item_type)
        old_id = sanitize_id(old_id)
        new_id = derive_id(new_name)

        parent = self._require_menu(parent_rel)
        index = next(
            (i for i, e in enumerate(parent.entries) if id_from_url(e.url) == old_id), None
        )
        if index is None:
            msg = f'{item_type.value.capitalize()} with ID "{old_id}" not found in {parent_rel}'
            raise NotFoundError(msg, path=parent_rel)
        if any(
            i != index and (id_from_url(e.url) == new_id or e.name == new_name)
            for i, e in enumerate(parent.entries)
        ):
            msg = f'Another item with name "{new_name}" or ID "{new_id}" already exists in {parent_rel}'
            raise DuplicateNameError(msg, path=parent_rel)

        old_rel = child_path(item_type, old_id)
        new_rel = child_path(item_type, new_id)
        if new_id != old_id:
            if self.exists(new_rel):
                msg = f'"{new_name}" derives ID "{new_id}", which already exists ({new_rel})'
                raise IdCollisionError(msg, path=new_rel)
            try:
                os.replace(self._abs(old_rel), self._abs(new_rel))
            except FileNotFoundError:
                logger.warning("{} not found during rename, creating {}", old_rel, new_rel)
                self._write_child(new_rel, self._new_child_document(item_type, new_name))
            except OSError as e:
                msg = f"Failed to rename {old_rel} to {new_rel}: {e}"
                raise StoreError(msg, path=old_rel) from e

        self._retitle(item_type, new_rel, new_name)

        entries = list(parent.entries)
        url = entries[index].url if new_id == old_id else self.child_url(item_type, new_id)
        entries[index] = MenuEntry(name=new_name, url=url)
        self.write_menu(parent_rel, replace(parent, entries=sort_menu_entries(entries)))
        logger.info("Renamed {} {} to {!r} ({})", item_type.value, old_id, new_name, new_id)
        return new_id

    def _retitle(self, item_type: ItemType, rel: str, title: str) -> None:
        try:
            if item_type is ItemType.LOCALITY:
                doc = self.read_directory(rel)
                if doc is not None:
                    self.write_directory(rel, replace(doc, title=title))
            else:
                menu = self.read_menu(rel)
                if menu is not None:
                    self.write_menu(rel, replace(menu, title=title))
        except SchemaError as e:
            logger.warning("Could not update title of {}: {}", rel, e)

    def delete_child(self, parent_rel: str, item_id: str, item_type: ItemType) -> DeleteReport:
        """Unlink a child from its parent and delete its file, cascading through
        zones and branches.

        Files that are already missing, or fail to delete, are recorded in the
        report and logged; they do not fail the operation.
        """
        item_id = sanitize_id(item_id)
        parent = self._require_menu(parent_rel)
        remaining = tuple(e for e in parent.entries if id_from_url(e.url) != item_id)
        if len(remaining) != len(parent.entries):
            self.write_menu(parent_rel, replace(parent, entries=remaining))
        else:
            logger.info("{} {} not linked from {}", item_type.value, item_id, parent_rel)

        report = DeleteReport()
        self._cascade_delete(item_type, item_id, report)
        logger.info(
            "Deleted {} {}: {} removed, {} already missing, {} failed",
            item_type.value,
            item_id,
            len(report.removed),
            len(report.already_missing),
            len(report.failed),
        )
        return report

    def _cascade_delete(self, item_type: ItemType, item_id: str, report: DeleteReport) -> None:
        rel = child_path(item_type, item_id)
        if item_type is not ItemType.LOCALITY:
            try:
                menu = self.read_menu(rel)
            except (SchemaError, StoreError) as e:
                logger.warning("Cannot read {} for cascade delete: {}", rel, e)
                menu = None
            for entry in menu.entries if menu else ():
                child_type = item_type_from_url(entry.url)
                if child_type is ItemType.LOCALITY or (
                    child_type is ItemType.BRANCH and item_type is ItemType.ZONE
                ):
                    self._cascade_delete(child_type, id_from_url(entry.url), report)
        try:
            if self.delete_document(rel):
                report.removed.append(rel)
            else:
                logger.debug("File not found, skipping deletion: {}", rel)
                report.already_missing.append(rel)
        except StoreError as e:
            logger.warning("Could not delete {}: {}", rel, e)
            report.failed.append(rel)

    def ensure_menu_entry(
        self,
        menu_rel: str,
        name: str,
        url: str,
        *,
        title: str | None = None,
        prompt: str = ZONE_PROMPT,
        replace_existing: bool = False,
    ) -> tuple[bool, bool]:
        """Make sure a menu links to url, creating the menu if absent.

        An entry matches when its name or target id equals the new one. With
        replace_existing, all matches collapse into exactly one (name, url)
        entry; otherwise any match leaves the menu as it is.

        Returns:
            (menu_created, menu_changed)
        """
        menu = self.read_menu(menu_rel)
        created = menu is None
        if menu is None:
            menu = MenuDocument(title=title or Path(menu_rel).stem, prompt=prompt)

        target_id = id_from_url(url)
        matches = [e for e in menu.entries if e.name == name or id_from_url(e.url) == target_id]
        if matches and not replace_existing:
            if created:
                self.write_menu(menu_rel, menu)
            return created, created
        if matches == [MenuEntry(name=name, url=url)]:
            return created, False

        others = [e for e in menu.entries if e not in matches]
        entries = sort_menu_entries([*others, MenuEntry(name=name, url=url)])
        changed = self.write_menu(menu_rel, replace(menu, entries=entries))
        return created, changed

    def remove_menu_entries(self, menu_rel: str, predicate: Callable[[MenuEntry], bool]) -> bool:
        """Drop every entry matching predicate. Returns True if the menu changed."""
        menu = self.read_menu(menu_rel)
        if menu is None:
            return False
        remaining = tuple(e for e in menu.entries if not predicate(e))
        if len(remaining) == len(menu.entries):
            return False
        return self.write_menu(menu_rel, replace(menu, entries=remaining))

    def ensure_locality(
        self,
        parent_rel: str,
        locality_name: str,
        *,
        parent_title: str | None = None,
    ) -> LocalityLink:
        """Create a locality file if it does not exist yet and link it into parent_rel.

        Existing localities are left alone. A missing parent menu is created.

        Raises:
            SchemaError: The locality file exists but is malformed.
            IdCollisionError: The derived id names a locality with a different title.
        """
        locality_id = derive_id(locality_name)
        rel = locality_path(locality_id)
        existing = self.read_directory(rel)
        if existing is not None:
            # Files created by upsert_extension carry their id as title.
            if existing.title and existing.title not in (locality_name, locality_id):
                msg = (
                    f'"{locality_name}" derives ID "{locality_id}", which already belongs to '
                    f'"{existing.title}" ({rel})'
                )
                raise IdCollisionError(msg, path=rel)
            return LocalityLink(locality_id=locality_id, created=False)

        self.write_directory(rel, DirectoryDocument(title=locality_name, prompt=LOCALITY_PROMPT))
        parent_created, parent_updated = self.ensure_menu_entry(
            parent_rel,
            locality_name,
            self.child_url(ItemType.LOCALITY, locality_id),
            title=parent_title,
        )
        logger.info("Created locality {} linked from {}", rel, parent_rel)
        return LocalityLink(
            locality_id=locality_id,
            created=True,
            parent_created=parent_created,
            parent_updated=parent_updated,
        )

    # --- Extensions ---

    def upsert_extension(self, locality_id: str, display_name: str, telephone: str) -> None:
        """Add an extension to a locality, creating the locality file if absent.

        Raises:
            ValidationError: Empty name or non-numeric telephone.
            DuplicateExtensionError: The same (name, telephone) is already listed.
        """
        locality_id = sanitize_id(locality_id)
        display_name, telephone = _check_extension(display_name, telephone)
        rel = locality_path(locality_id)

        doc = self.read_directory(rel)
        if doc is None:
            logger.warning("{} not found, creating it", rel)
            doc = DirectoryDocument(title=locality_id, prompt=LOCALITY_PROMPT)
        new_entry = DirectoryEntry(name=display_name, telephone=telephone)
        if new_entry in doc.entries:
            msg = f'An extension with Name "{display_name}" and Telephone "{telephone}" already exists'
            raise DuplicateExtensionError(msg, path=rel)

        entries = sort_directory_entries([*doc.entries, new_entry])
        self.write_directory(rel, replace(doc, entries=entries))

    def edit_extension(
        self,
        locality_id: str,
        old: DirectoryEntry,
        new_name: str,
        new_telephone: str,
    ) -> None:
        locality_id = sanitize_id(locality_id)
        new_name, new_telephone = _check_extension(new_name, new_telephone)
        rel = locality_path(locality_id)
        doc = self._require_directory(rel)
        if old not in doc.entries:
            msg = f'Original extension "{old.name} - {old.telephone}" not found'
            raise NotFoundError(msg, path=rel)

        new_entry = DirectoryEntry(name=new_name, telephone=new_telephone)
        if new_entry != old and new_entry in doc.entries:
            msg = f'Another extension with name "{new_name}" and number "{new_telephone}" already exists'
            raise DuplicateExtensionError(msg, path=rel)

        index = doc.entries.index(old)
        entries = [*doc.entries[:index], new_entry, *doc.entries[index + 1 :]]
        self.write_directory(rel, replace(doc, entries=sort_directory_entries(entries)))

    def remove_extension(self, locality_id: str, display_name: str, telephone: str) -> bool:
        """Remove an extension. Succeeds without change if it is not there."""
        rel = locality_path(locality_id)
        doc = self.read_directory(rel)
        if doc is None:
            logger.warning("{} not found, nothing to remove", rel)
            return False
        target = DirectoryEntry(name=display_name, telephone=telephone)
        remaining = tuple(e for e in doc.entries if e != target)
        if len(remaining) == len(doc.entries):
            return False
        self.write_directory(rel, replace(doc, entries=remaining))
        return True

    def _require_directory(self, rel: str) -> DirectoryDocument:
        try:
            doc = self.read_directory(rel)
        except SchemaError as e:
            raise NotFoundError(str(e), path=rel) from e
        if doc is None:
            msg = f"Locality file {rel} not found"
            raise NotFoundError(msg, path=rel)
        return doc

    def merge_extensions(self, locality_id: str, entries: Iterable[DirectoryEntry]) -> MergeReport:
        """Add every new (name, telephone) pair to an existing locality in one write.

        Pairs already listed are left alone; entries with an empty name or a
        non-numeric telephone are returned as invalid instead of raising.

        Raises:
            NotFoundError: The locality file is missing or malformed.
        """
        rel = locality_path(sanitize_id(locality_id))
        doc = self._require_directory(rel)
        merged = list(doc.entries)
        present = 0
        invalid: list[DirectoryEntry] = []
        for entry in entries:
            try:
                name, telephone = _check_extension(entry.name, entry.telephone)
            except ValidationError as e:
                logger.warning("Skipping entry for {}: {}", rel, e)
                invalid.append(entry)
                continue
            clean = DirectoryEntry(name=name, telephone=telephone)
            if clean in merged:
                present += 1
            else:
                merged.append(clean)
        added = len(merged) - len(doc.entries)
        if added:
            self.write_directory(rel, replace(doc, entries=sort_directory_entries(merged)))
        logger.info("Merged {} new extensions into {}", added, rel)
        return MergeReport(added=added, already_present=present, invalid=tuple(invalid))

    def move_extensions(
        self,
        source_id: str,
        entries: Sequence[DirectoryEntry],
        destination_id: str,
    ) -> MergeReport:
        """Move entries from one locality to another.

        Every entry must be listed in the source. Entries the destination already
        lists are only removed from the source.

        Raises:
            ValidationError: Source and destination are the same locality.
            NotFoundError: Either locality is missing, or an entry is not in the source.
        """
        source_id = sanitize_id(source_id)
        destination_id = sanitize_id(destination_id)
        if source_id == destination_id:
            msg = "Source and destination locality are the same"
            raise ValidationError(msg)
        source_rel = locality_path(source_id)
        destination_rel = locality_path(destination_id)
        source = self._require_directory(source_rel)
        destination = self._require_directory(destination_rel)

        wanted = list(dict.fromkeys(entries))
        absent = [e for e in wanted if e not in source.entries]
        if absent:
            msg = f'Extension "{absent[0].name} - {absent[0].telephone}" not found in {source_rel}'
            raise NotFoundError(msg, path=source_rel)

        new_entries = [e for e in wanted if e not in destination.entries]
        # Destination is written first: an interrupted move duplicates, never drops.
        if new_entries:
            merged = sort_directory_entries([*destination.entries, *new_entries])
            self.write_directory(destination_rel, replace(destination, entries=merged))
        remaining = tuple(e for e in source.entries if e not in wanted)
        self.write_directory(source_rel, replace(source, entries=remaining))
        logger.info(
            "Moved {} extensions from {} to {}", len(wanted), source_rel, destination_rel
        )
        return MergeReport(added=len(new_entries), already_present=len(wanted) - len(new_entries))

    # --- Host/port rewrite ---

    def rewrite_base_url(self, host: str, port: str) -> UrlRewriteReport:
        """Point every menu URL at a new host and/or port.

        Empty host or port keeps the current value of that part.
        """
        menus = [main_menu_path()]
        for sub in (ZONE_DIR, BRANCH_DIR):
            directory = self.root / sub
            if directory.is_dir():
                menus += [f"{sub}/{p.name}" for p in sorted(directory.glob("*.xml"))]

        processed = changed = 0
        failed: list[str] = []
        for rel in menus:
            try:
                menu = self.read_menu(rel)
            except (SchemaError, StoreError) as e:
                logger.error("Failed to process {} for URL update: {}", rel, e)
                failed.append(rel)
                continue
            if menu is None:
                continue
            processed += 1
            entries = tuple(
                MenuEntry(name=e.name, url=_with_host(e.url, host, port, rel)) for e in menu.entries
            )
            try:
                if entries != menu.entries and self.write_menu(rel, replace(menu, entries=entries)):
                    changed += 1
            except StoreError as e:
                logger.error("{}", e)
                failed.append(rel)

        self.network = NetworkConfig(host=host or self.network.host, port=port or self.network.port)
        return UrlRewriteReport(processed=processed, changed=changed, failed=tuple(failed))


def _check_extension(display_name: str, telephone: str) -> tuple[str, str]:
    display_name = display_name.strip()
    telephone = telephone.strip()
    if not display_name:
        msg = "Extension name cannot be empty"
        raise ValidationError(msg)
    if not telephone:
        msg = "Extension telephone cannot be empty"
        raise ValidationError(msg)
    if not is_numeric_extension(telephone):
        msg = f"Extension telephone must be a valid number, got {telephone!r}"
        raise ValidationError(msg)
    return display_name, telephone


def _with_host(url: str, host: str, port: str, rel: str) -> str:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.hostname:
        logger.warning("Skipped malformed URL {!r} in {}", url, rel)
        return url
    new_host = host or parsed.hostname
    new_port = port or (str(parsed.port) if parsed.port else "")
    netloc = f"{new_host}:{new_port}" if new_port else new_host
    return urlunparse(parsed._replace(netloc=netloc))
