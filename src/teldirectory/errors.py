"""Exception taxonomy for the telephone directory."""


class TelDirectoryError(Exception):
    """Base class for all directory errors."""


class SchemaError(TelDirectoryError):
    """XML text does not match the Cisco menu/directory schema."""


class ValidationError(TelDirectoryError):
    """Caller input was rejected before touching the tree."""


class AdapterError(TelDirectoryError):
    """An external source (LDAP server, feed) could not be used at all."""


class StoreError(TelDirectoryError):
    """A filesystem operation on the directory tree failed."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class NotFoundError(StoreError):
    """A document the operation depends on is missing or unreadable."""


class DuplicateNameError(StoreError):
    """A menu entry with the same derived id or display name already exists."""


class IdCollisionError(DuplicateNameError):
    """The derived id already names a file that belongs to a different item."""


class DuplicateExtensionError(StoreError):
    """An identical (name, telephone) directory entry already exists."""
