import asyncio
import ntpath
import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Optional, Set, Union

from icestorm_server.config import WORKSPACE_PREFIX
from icestorm_server.errors import FileWriteError, InvalidFileName, WorkspaceCreationError


@dataclass
class Workspace:
    path: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    files: Set[str] = field(default_factory=set)


def create_workspace(root: Optional[str] = None) -> Workspace:
    """
    Allocates a fresh, uniquely named directory for one job.

    Args:
        root (str): Parent directory. Defaults to the system temp directory.

    Raises:
        WorkspaceCreationError: if the directory cannot be created.
    """
    try:
        if root is not None:
            os.makedirs(root, exist_ok=True)
        path = tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=root)
    except OSError as e:
        raise WorkspaceCreationError(f"Unable to create workspace: {e}") from e
    return Workspace(path=os.path.realpath(path))


def _resolve_target(workspace: Workspace, name: str) -> str:
    if not isinstance(name, str) or not name:
        raise InvalidFileName(str(name), "empty name")
    if "\x00" in name:
        raise InvalidFileName(name, "contains NUL byte")
    if os.path.isabs(name) or ntpath.isabs(name) or ntpath.splitdrive(name)[0]:
        raise InvalidFileName(name, "absolute paths are not allowed")

    parts = name.replace("\\", "/").split("/")
    if ".." in parts:
        raise InvalidFileName(name, "parent directory segments are not allowed")

    target = os.path.realpath(os.path.join(workspace.path, *parts))
    if os.path.commonpath([workspace.path, target]) != workspace.path or target == workspace.path:
        raise InvalidFileName(name, "resolves outside the workspace")
    return target


def write_file(workspace: Workspace, name: str, body: Union[str, bytes]) -> str:
    """
    Writes one source file into the workspace and returns its absolute path.

    Nested relative names ("rtl/top.v") are allowed; anything that could land
    outside the workspace is rejected before touching the filesystem.
    """
    target = _resolve_target(workspace, name)
    data = body.encode("utf-8") if isinstance(body, str) else body

    try:
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "wb") as f:
            f.write(data)
    except OSError as e:
        raise FileWriteError(f"Unable to write {name!r}: {e}") from e

    workspace.files.add(name)
    return target


def destroy(workspace: Workspace) -> None:
    """Recursively removes the workspace. Missing directories are ignored."""
    try:
        shutil.rmtree(workspace.path)
    except FileNotFoundError:
        pass


@asynccontextmanager
async def open_workspace(root: Optional[str] = None, log_prefix: str = "[WORKSPACE]") -> AsyncIterator[Workspace]:
    """
    Scoped workspace: created on entry, always removed on exit.

    A failing cleanup is reported on the console and never replaces the
    exception (or result) of the body.
    """
    workspace = await asyncio.to_thread(create_workspace, root)
    print(f"{log_prefix} Created workspace {workspace.path}", flush=True)
    try:
        yield workspace
    finally:
        print(f"{log_prefix} Purging workspace {workspace.path}", flush=True)
        try:
            # Shielded so a cancelled job still waits for its directory to go away.
            await asyncio.shield(asyncio.to_thread(destroy, workspace))
        except OSError as e:
            print(f"{log_prefix} Failed to purge {workspace.path}: {e}", flush=True)
