"""Discovery of running Power BI Desktop engines.

Each open report gets a workspace directory under:
    %LOCALAPPDATA%/Microsoft/Power BI Desktop/AnalysisServicesWorkspaces/{workspace}/

The engine writes its listening port to Data/msmdsrv.port.txt (UTF-16 with a
BOM, usually) and keeps one {database id}.{n}.db.xml per loaded database in
the same Data folder. Port file + database id is everything the proxy needs.
"""

import os
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

import logfire

PORT_FILE = Path("Data") / "msmdsrv.port.txt"
DATA_DIR = "Data"

MIN_PORT = 1025
MAX_PORT = 65535

# {database id}.{version}.db.xml
_DB_XML_RE = re.compile(r"^(?P<database>.+?)\.\d+\.db\.xml$", re.IGNORECASE)

# (workspace path, port) -> database name or None
DatabaseResolver = Callable[[Path, int], str | None]


@dataclass
class PowerBIInstance:
    """A running engine we could point the proxy at."""

    workspace_id: str
    port: int
    database_name: str | None
    last_modified: datetime
    path: Path

    @property
    def file_name(self) -> str:
        return f"Workspace-{self.workspace_id[:8]}"

    def __str__(self) -> str:
        return f"{self.file_name} (Port: {self.port})"


def get_workspaces_dir() -> Path:
    """Where Power BI Desktop keeps its engine workspaces.

    PBI_WORKSPACES_DIR wins if set.
    """
    override = os.environ.get("PBI_WORKSPACES_DIR")
    if override:
        return Path(override)

    local_appdata = os.environ.get("LOCALAPPDATA")
    base = Path(local_appdata) if local_appdata else Path.home() / "AppData" / "Local"
    return base / "Microsoft" / "Power BI Desktop" / "AnalysisServicesWorkspaces"


def is_workspace_path_valid(workspaces_dir: Path | None = None) -> bool:
    return (workspaces_dir or get_workspaces_dir()).is_dir()


def _decode_port_text(raw: bytes) -> str:
    """The engine writes UTF-16; older builds and hand edits give UTF-8/ASCII."""
    if raw.startswith((b"\xff\xfe", b"\xfe\xff")):
        return raw.decode("utf-16", errors="ignore")
    if b"\x00" in raw:
        return raw.decode("utf-16-le", errors="ignore")
    return raw.decode("utf-8", errors="ignore")


def read_port_file(path: Path) -> int | None:
    """Read a msmdsrv.port.txt. Returns None if it isn't a usable port."""
    try:
        raw = path.read_bytes()
    except OSError as e:
        logfire.debug(f"Could not read port file {path}: {e}")
        return None

    digits = "".join(c for c in _decode_port_text(raw) if c.isdigit())
    if not digits:
        return None

    port = int(digits)
    if MIN_PORT <= port <= MAX_PORT:
        return port
    return None


def database_name_from_workspace(workspace: Path, port: int) -> str | None:
    """Database id of the model loaded in ``workspace``, taken from its .db.xml."""
    data_dir = workspace / DATA_DIR
    if not data_dir.is_dir():
        return None

    candidates = []
    for entry in data_dir.iterdir():
        match = _DB_XML_RE.match(entry.name)
        if match and entry.is_file():
            candidates.append((entry.stat().st_mtime, match.group("database")))

    if not candidates:
        logfire.debug(f"No database found in workspace {workspace.name} (port {port})")
        return None

    # Newest wins if the engine left an old one behind
    candidates.sort(reverse=True)
    return candidates[0][1]


def detect_instances(
    workspaces_dir: Path | None = None,
    resolve_database: DatabaseResolver | None = None,
) -> list[PowerBIInstance]:
    """List running engines, most recently touched first.

    Args:
        workspaces_dir: Workspaces root (defaults to get_workspaces_dir())
        resolve_database: How to find each engine's database name

    Returns:
        PowerBIInstance per workspace with a valid port file
    """
    workspaces_dir = workspaces_dir or get_workspaces_dir()
    resolve_database = resolve_database or database_name_from_workspace

    if not workspaces_dir.is_dir():
        return []

    instances = []

    for workspace in workspaces_dir.iterdir():
        if not workspace.is_dir():
            continue
        try:
            port_file = workspace / PORT_FILE
            if not port_file.exists():
                continue

            port = read_port_file(port_file)
            if port is None:
                continue

            instances.append(
                PowerBIInstance(
                    workspace_id=workspace.name,
                    port=port,
                    database_name=resolve_database(workspace, port),
                    last_modified=datetime.fromtimestamp(workspace.stat().st_mtime),
                    path=workspace,
                )
            )
        except Exception as e:
            # One broken workspace shouldn't hide the others
            logfire.warning(f"Error processing workspace {workspace}: {e}")
            continue

    instances.sort(key=lambda i: i.last_modified, reverse=True)
    logfire.debug(f"Detected {len(instances)} Power BI instance(s) in {workspaces_dir}")
    return instances
