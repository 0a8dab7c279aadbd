"""MCP server exposing directory search and the sync entry points as tools."""

import asyncio
import os
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from mcp.server.fastmcp import Context, FastMCP

from teldirectory.actions import DirectoryActions
from teldirectory.auth import StaticGate
from teldirectory.config import load_network_config, resolve_db_path, resolve_directory_root
from teldirectory.core.database.schema import open_database
from teldirectory.core.sources.ldap_source import AdSyncSettings
from teldirectory.core.store.tree import DirectoryTreeStore

# --- Core functions (testable without MCP context) ---


def directory_search(actions: DirectoryActions, *, query: str, limit: int = 20) -> dict[str, Any]:
    """Search localities and extensions by name or number.

    Args:
        query: At least 2 characters.
        limit: Max results (1-20).
    """
    if len(query.strip()) < 2:
        return {"error": "Query must have at least 2 characters.", "results": [], "count": 0}
    limit = max(1, min(limit, 20))
    results = actions.search(query)[:limit]
    return {"results": results, "count": len(results)}


def directory_tree(actions: DirectoryActions) -> dict[str, Any]:
    zones = actions.describe_tree()
    return {"zones": zones, "count": len(zones), "lastSync": actions.last_sync_times()}


def directory_sync_feeds(actions: DirectoryActions, *, feed_urls: list[str]) -> dict[str, Any]:
    return actions.sync_feeds("\n".join(feed_urls))


def directory_import_csv(actions: DirectoryActions, *, csv_text: str) -> dict[str, Any]:
    return actions.import_csv(csv_text)


def directory_sync_active_directory(
    actions: DirectoryActions,
    *,
    server_url: str,
    bind_dn: str,
    bind_password: str,
    search_base: str,
    search_filter: str | None = None,
) -> dict[str, Any]:
    settings = AdSyncSettings.from_form(
        {
            "ldapServerUrl": server_url,
            "bindDn": bind_dn,
            "bindPassword": bind_password,
            "searchBase": search_base,
            "searchFilter": search_filter,
        }
    )
    return actions.sync_active_directory(settings)


def directory_add_extension(
    actions: DirectoryActions, *, locality_id: str, name: str, telephone: str
) -> dict[str, Any]:
    return actions.add_extension(locality_id, name, telephone)


# --- Server lifetime ---


@dataclass
class ServerContext:
    """Shared resources for the MCP server lifetime."""

    actions: DirectoryActions
    conn: sqlite3.Connection
    sync_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@asynccontextmanager
async def server_lifespan(_server: FastMCP) -> AsyncIterator[ServerContext]:
    """Open the database and the directory tree on startup, close on shutdown."""
    root = resolve_directory_root()
    conn = open_database(resolve_db_path())
    read_only = bool(os.environ.get("TELDIRECTORY_READ_ONLY"))
    try:
        store = DirectoryTreeStore(root, load_network_config(root))
        mode = "read-only" if read_only else "writable"
        logger.info("Serving directory {} ({})", store.root, mode)
        actions = DirectoryActions(store, StaticGate(not read_only), db=conn)
        yield ServerContext(actions=actions, conn=conn)
    finally:
        conn.close()


mcp_server = FastMCP(
    "teldirectory",
    instructions="""\
The telephone directory is a tree: zones contain branches and localities,
localities contain extensions (a display name and a numeric telephone).

- Use directory_search_tool to find localities or extensions by name or number.
- Use directory_tree_tool to see every zone and its localities.
- The sync tools rename local extensions to the names reported by external
  sources. Numbers with conflicting names are reported, not changed. Numbers
  unknown locally are listed under "Missing Extensions from Feed".
""",
    lifespan=server_lifespan,
)


def _ctx(mcp_ctx: Context) -> ServerContext:
    return mcp_ctx.request_context.lifespan_context  # type: ignore[return-value]


# --- MCP Tool Wrappers ---


@mcp_server.tool()
async def directory_search_tool(ctx: Context, query: str, limit: int = 20) -> dict[str, Any]:
    """Search localities and extensions by name or number.

    Localities whose own name matches come first, then those with more
    matching extensions.

    Args:
        query: At least 2 characters, case-insensitive substring.
        limit: Max results (1-20).
    """
    return directory_search(_ctx(ctx).actions, query=query, limit=limit)


@mcp_server.tool()
async def directory_tree_tool(ctx: Context) -> dict[str, Any]:
    """List every zone with its localities and extension counts."""
    return directory_tree(_ctx(ctx).actions)


@mcp_server.tool()
async def directory_sync_feeds_tool(ctx: Context, feed_urls: list[str]) -> dict[str, Any]:
    """Sync extension names from remote CiscoIPPhoneDirectory XML feeds.

    Args:
        feed_urls: Absolute http(s) URLs, fetched one after another.
    """
    server = _ctx(ctx)
    async with server.sync_lock:
        return directory_sync_feeds(server.actions, feed_urls=feed_urls)


@mcp_server.tool()
async def directory_import_csv_tool(ctx: Context, csv_text: str) -> dict[str, Any]:
    """Import extensions from CSV text (Name,Extension,LocalityID,ZoneID per row).

    Missing localities and zones are created. A header row is optional.
    """
    server = _ctx(ctx)
    async with server.sync_lock:
        return directory_import_csv(server.actions, csv_text=csv_text)


@mcp_server.tool()
async def directory_sync_active_directory_tool(
    ctx: Context,
    server_url: str,
    bind_dn: str,
    bind_password: str,
    search_base: str,
    search_filter: str | None = None,
) -> dict[str, Any]:
    """Import users from Active Directory into the "Active Directory Users" zone.

    Args:
        server_url: e.g. ldap://dc.example.com
        bind_dn: DN or user principal to bind as.
        bind_password: Bind password.
        search_base: Base DN to search under.
        search_filter: LDAP filter, default (objectClass=user).
    """
    server = _ctx(ctx)
    async with server.sync_lock:
        return directory_sync_active_directory(
            server.actions,
            server_url=server_url,
            bind_dn=bind_dn,
            bind_password=bind_password,
            search_base=search_base,
            search_filter=search_filter,
        )


@mcp_server.tool()
async def directory_add_extension_tool(
    ctx: Context, locality_id: str, name: str, telephone: str
) -> dict[str, Any]:
    """Add an extension to a locality.

    Args:
        locality_id: Locality id as shown by directory_tree_tool.
        name: Display name.
        telephone: Digits only.
    """
    server = _ctx(ctx)
    async with server.sync_lock:
        return directory_add_extension(
            server.actions, locality_id=locality_id, name=name, telephone=telephone
        )


def run_mcp_server() -> None:
    """Run the MCP server with stdio transport."""
    from teldirectory.logging_config import configure_logging

    configure_logging(verbose=False)
    mcp_server.run(transport="stdio")
