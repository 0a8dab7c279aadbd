"""Configuration constants and path resolution for the telephone directory."""

import json
import os
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

# Layout of the directory tree, relative to its root.
MAIN_MENU_FILENAME = "MainMenu.xml"
ZONE_DIR = "zonebranch"
BRANCH_DIR = "branch"
DEPARTMENT_DIR = "department"

# URL prefix the phones use to fetch the tree over HTTP.
URL_PREFIX = "ivoxsdir"

DEFAULT_MENU_TITLE = "Main Directory"
DEFAULT_MENU_PROMPT = "Select an option"
ZONE_PROMPT = "Select an item"
BRANCH_PROMPT = "Select a locality"
LOCALITY_PROMPT = "Select an extension"

# Synthetic locality holding extensions that sources know about but the tree does not.
MISSING_EXTENSIONS_ID = "MissingExtensionsFromFeed"
MISSING_EXTENSIONS_NAME = "Missing Extensions from Feed"
MISSING_EXTENSIONS_PROMPT = "Extensions found in feeds but not locally"

# Zones whose imported localities are linked from a branch menu instead of the
# zone menu: lowercased zone id -> branch id.
BRANCH_ORGANIZED_ZONES: dict[str, str] = {"zonametropolitana": "ZonaMetropolitana"}

# Active Directory sync defaults.
AD_ZONE_NAME = "Active Directory Users"
AD_UNASSIGNED_DEPARTMENT = "Unassigned"
AD_SOURCE = "ad"
DEFAULT_LDAP_ATTRIBUTES: dict[str, str] = {
    "display_name": "displayName",
    "extension": "ipPhone",
    "department": "department",
    "email": "mail",
    "phone": "telephoneNumber",
    "organization": "company",
    "job_title": "title",
}
DEFAULT_LDAP_FILTER = "(objectClass=user)"
LDAP_TIMEOUT = 15

# Remote XML feeds.
FEED_TIMEOUT = 20

# Where the directory root and network settings are persisted.
CONFIG_DIR = Path(".config")
DIRECTORY_CONFIG_FILE = CONFIG_DIR / "directory.config.json"
NETWORK_CONFIG_FILENAME = ".config.json"
DEFAULT_ROOT = Path("ivoxsdir")
DEFAULT_DB_PATH = Path("teldirectory.db")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = "3000"


@dataclass(frozen=True)
class NetworkConfig:
    """Host and port embedded in the absolute URLs of menu entries."""

    host: str = DEFAULT_HOST
    port: str = DEFAULT_PORT

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}/{URL_PREFIX}"


def load_directory_config(config_file: Path = DIRECTORY_CONFIG_FILE) -> str | None:
    """Return the configured root path, or None when unset or unreadable."""
    try:
        data = json.loads(config_file.read_text(encoding="utf-8"))
    except (FileNotFoundError, ValueError):
        return None
    root = data.get("ivoxsRootPath") if isinstance(data, dict) else None
    return root if isinstance(root, str) else None


def save_directory_config(root: str | None, config_file: Path = DIRECTORY_CONFIG_FILE) -> None:
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps({"ivoxsRootPath": root}, indent=2), encoding="utf-8")


def resolve_directory_root(config_file: Path = DIRECTORY_CONFIG_FILE) -> Path:
    """Find the directory tree root.

    Order: TELDIRECTORY_ROOT env var, the saved directory config (if it names an
    existing absolute directory), then ./ivoxsdir.
    """
    env_root = os.environ.get("TELDIRECTORY_ROOT")
    if env_root:
        return Path(env_root).expanduser()

    configured = load_directory_config(config_file)
    if configured:
        candidate = Path(configured)
        if not candidate.is_absolute():
            logger.warning("Configured root {!r} is not absolute, using default", configured)
        elif not candidate.is_dir():
            logger.warning("Configured root {!r} is not a directory, using default", configured)
        else:
            return candidate
    return Path.cwd() / DEFAULT_ROOT


def resolve_db_path() -> Path:
    env_db = os.environ.get("TELDIRECTORY_DB")
    return Path(env_db).expanduser() if env_db else Path.cwd() / DEFAULT_DB_PATH


def load_network_config(root: Path) -> NetworkConfig:
    """Read host/port from <root>/.config.json, falling back to defaults."""
    path = root / NETWORK_CONFIG_FILENAME
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        logger.debug("No network config at {}, using defaults", path)
        return NetworkConfig()
    except ValueError:
        logger.warning("Network config {} is not valid JSON, using defaults", path)
        return NetworkConfig()
    return NetworkConfig(
        host=str(data.get("host") or DEFAULT_HOST),
        port=str(data.get("port") or DEFAULT_PORT),
    )


def save_network_config(root: Path, network: NetworkConfig) -> None:
    root.mkdir(parents=True, exist_ok=True)
    (root / NETWORK_CONFIG_FILENAME).write_text(
        json.dumps({"host": network.host, "port": network.port}, indent=2), encoding="utf-8"
    )
