"""CLI for the telephone directory (browse, import, sync, MCP server)."""

import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Annotated, Any

import typer
from loguru import logger

from teldirectory.actions import DirectoryActions, set_directory_root
from teldirectory.auth import StaticGate
from teldirectory.config import (
    DEFAULT_LDAP_FILTER,
    load_network_config,
    resolve_db_path,
    resolve_directory_root,
)
from teldirectory.core.database.schema import open_database
from teldirectory.core.sources.ldap_source import AdSyncSettings
from teldirectory.core.store.tree import DirectoryTreeStore
from teldirectory.logging_config import configure_logging

app = typer.Typer(help="Telephone directory: manage and sync Cisco IP Phone XML directories.")


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only log warnings and errors"),
    root: Annotated[
        Path | None,
        typer.Option("--root", "-r", help="Directory tree root (holds MainMenu.xml)"),
    ] = None,
) -> None:
    configure_logging(verbose=verbose, quiet=quiet)
    ctx.obj = root


def _actions(ctx: typer.Context, **kwargs: Any) -> DirectoryActions:
    root = ctx.obj or resolve_directory_root()
    store = DirectoryTreeStore(root, load_network_config(Path(root)))
    return DirectoryActions(store, StaticGate(True), **kwargs)


def _with_db(ctx: typer.Context, run: Callable[[DirectoryActions], Any]) -> Any:
    """Run against actions backed by the database, closing it afterwards."""
    conn = open_database(resolve_db_path())
    try:
        return run(_actions(ctx, db=conn))
    finally:
        conn.close()


def _emit(result: dict[str, Any], output_json: bool) -> None:
    """Print a result dict, exiting non-zero when it reports failure."""
    if output_json:
        typer.echo(json.dumps(result, indent=2, ensure_ascii=False))
    else:
        typer.echo(result["message"])
        for conflict in result.get("conflictedExtensions", []):
            names = ", ".join(f"{c['name']} ({c['sourceFeed']})" for c in conflict["conflicts"])
            typer.echo(f"  conflict {conflict['number']}: {names}")
        for missing in result.get("missingExtensions", []):
            source = missing["sourceFeed"]
            typer.echo(f"  missing  {missing['number']}: {missing['name']} ({source})")
        for error in (result.get("details") or {}).get("errors", []):
            typer.echo(f"  row {error['row']}: {error['error']}")
    if not result["success"]:
        raise typer.Exit(1)


def _read_input(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    path = Path(source).expanduser()
    if not path.is_file():
        logger.error("File not found: {}", path)
        raise typer.Exit(1)
    return path.read_text(encoding="utf-8-sig")


@app.command()
def tree(
    ctx: typer.Context,
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show zones, their localities and extension counts."""
    zones = _actions(ctx).describe_tree()
    if output_json:
        typer.echo(json.dumps(zones, indent=2, ensure_ascii=False))
        return
    if not zones:
        typer.echo("No zones.")
    for zone in zones:
        typer.echo(f"{zone['name']}  [id={zone['id']}]")
        if "error" in zone:
            typer.echo(f"  unavailable: {zone['error']}")
            continue
        for loc in zone["localities"]:
            via = f" via {loc['branchId']}" if loc["branchId"] else ""
            typer.echo(f"  {loc['name']} ({loc['extensions']} extensions){via}  [id={loc['id']}]")
        for skipped in zone["skipped"]:
            typer.echo(f"  skipped unreadable {skipped}")


@app.command(name="add-zone")
def add_zone(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Zone display name"),
) -> None:
    """Add a zone to the root menu."""
    _emit(_actions(ctx).add_zone(name), output_json=False)


@app.command(name="import-csv")
def import_csv_cmd(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="CSV file (Name,Extension,LocalityID,ZoneID) or '-'"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Import extensions from CSV, creating missing localities and zones."""
    csv_text = _read_input(source)
    _emit(_with_db(ctx, lambda actions: actions.import_csv(csv_text)), output_json)


@app.command(name="import-xml")
def import_xml(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="CiscoIPPhone XML file or '-'"),
    zone: str | None = typer.Option(None, "--zone", "-z", help="Zone ID: add a locality per MenuItem"),
    locality: str | None = typer.Option(
        None, "--locality", "-l", help="Locality ID: merge its DirectoryEntry items"
    ),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Import an uploaded zone menu or locality directory XML file."""
    if bool(zone) == bool(locality):
        typer.echo("Pass exactly one of --zone or --locality.", err=True)
        raise typer.Exit(code=2)
    xml_text = _read_input(source)
    actions = _actions(ctx)
    if zone:
        result = actions.import_zone_xml(zone, xml_text)
    else:
        result = actions.import_locality_xml(locality or "", xml_text)
    _emit(result, output_json)


@app.command(name="sync-feeds")
def sync_feeds(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="File with one feed URL per line, or '-'"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Sync extension names from remote CiscoIPPhoneDirectory feeds."""
    urls_text = _read_input(source)
    _emit(_with_db(ctx, lambda actions: actions.sync_feeds(urls_text)), output_json)


@app.command(name="sync-ad")
def sync_ad(
    ctx: typer.Context,
    server: Annotated[str, typer.Option("--server", "-s", help="LDAP server URL")],
    bind_dn: Annotated[str, typer.Option("--bind-dn", "-u", help="Bind DN")],
    search_base: Annotated[str, typer.Option("--base", "-b", help="Search base DN")],
    password: Annotated[
        str,
        typer.Option(
            "--password",
            envvar="TELDIRECTORY_LDAP_PASSWORD",
            prompt=True,
            hide_input=True,
            help="Bind password",
        ),
    ],
    search_filter: Annotated[
        str, typer.Option("--filter", "-f", help="LDAP search filter")
    ] = DEFAULT_LDAP_FILTER,
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Import users from Active Directory and sync extension names."""
    settings = AdSyncSettings(
        server_url=server,
        bind_dn=bind_dn,
        bind_password=password,
        search_base=search_base,
        search_filter=search_filter,
    )
    _emit(_with_db(ctx, lambda actions: actions.sync_active_directory(settings)), output_json)


@app.command()
def search(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Locality name, extension name or number"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Search localities and extensions across all zones."""
    hits = _actions(ctx).search(query)
    if output_json:
        typer.echo(json.dumps(hits, indent=2, ensure_ascii=False))
        return
    typer.echo(f"Found {len(hits)} localities:\n")
    for hit in hits:
        typer.echo(f"  [{hit['zoneName']}] {hit['localityName']}  {hit['fullPath']}")
        for ext in hit["matchingExtensions"]:
            typer.echo(f"    {ext['number']}  {ext['name']}")


@app.command()
def status(
    ctx: typer.Context,
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show when each source was last synced."""
    times = _with_db(ctx, lambda actions: actions.last_sync_times())
    if output_json:
        typer.echo(json.dumps(times, indent=2))
        return
    for source, when in times.items():
        typer.echo(f"{source:<6} {when or 'never'}")


@app.command(name="update-urls")
def update_urls(
    ctx: typer.Context,
    host: str = typer.Option("", "--host", help="New host for menu URLs"),
    port: str = typer.Option("", "--port", help="New port for menu URLs"),
) -> None:
    """Rewrite host/port of every menu URL and save the network config."""
    _emit(_actions(ctx).update_urls(host, port), output_json=False)


@app.command(name="set-root")
def set_root(path: str = typer.Argument(..., help="Absolute path of the directory root")) -> None:
    """Save the directory root used by later runs."""
    _emit(set_directory_root(path, StaticGate(True)), output_json=False)


@app.command()
def serve() -> None:
    """Start the MCP server (stdio transport)."""
    from teldirectory.mcp.server import run_mcp_server

    run_mcp_server()
