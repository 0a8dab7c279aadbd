"""Protocols for the collaborators injected into the directory core."""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class AuthorizationGate(Protocol):
    """Answers whether the current caller may mutate the directory."""

    def is_authorized(self) -> bool:
        ...


@runtime_checkable
class FeedResponse(Protocol):
    status_code: int
    content: bytes

    def raise_for_status(self) -> None:
        ...


@runtime_checkable
class FeedSession(Protocol):
    """The slice of requests.Session used to fetch remote XML feeds."""

    def get(self, url: str, **kwargs: Any) -> FeedResponse:
        ...


@runtime_checkable
class LdapClient(Protocol):
    """Performs a bound directory search and returns entry attribute maps."""

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
        """Return one attribute dict per matching entry."""
        ...
