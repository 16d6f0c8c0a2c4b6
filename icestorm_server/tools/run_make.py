import asyncio
import os
import signal
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional, Sequence, Union

from icestorm_server.config import ARTIFACT_FILENAME
from icestorm_server.errors import (
    BuildFailure,
    BuildTimeout,
    MissingArtifact,
    SpawnError,
    SynthesisError,
    error_exit_code,
)

# Lines of combined stdout/stderr kept for error responses.
LOG_TAIL_LINES = 200
# Per-line cap in that log; the console always gets the full line.
MAX_LOG_LINE_CHARS = 4000
# Child output is read in raw chunks and split by hand, line length is unbounded.
READ_CHUNK_BYTES = 65536


@dataclass(frozen=True)
class Artifact:
    data: bytes


@dataclass(frozen=True)
class Failure:
    kind: str
    detail: str
    exit_code: Optional[int] = None
    log: str = ""

    @classmethod
    def from_error(cls, exc: SynthesisError, log: str = "") -> "Failure":
        return cls(kind=exc.kind, detail=exc.detail, exit_code=error_exit_code(exc), log=log)


BuildOutcome = Union[Artifact, Failure]


def _emit(raw: bytes, tail: Deque[str], prefix: str) -> None:
    text = raw.decode("utf-8", errors="replace").rstrip("\r")
    print(f"{prefix} {text}", flush=True)
    if len(text) > MAX_LOG_LINE_CHARS:
        text = text[:MAX_LOG_LINE_CHARS] + " [truncated]"
    tail.append(text + "\n")


async def _pump(stream: Optional[asyncio.StreamReader], tail: Deque[str], prefix: str) -> None:
    if stream is None:
        return
    pending = b""
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        pending += chunk
        *lines, pending = pending.split(b"\n")
        for line in lines:
            _emit(line, tail, prefix)
    if pending:
        _emit(pending, tail, prefix)


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    # make runs yosys/nextpnr/icepack as its own children; take the whole group down.
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass


async def _kill(proc: asyncio.subprocess.Process) -> None:
    _kill_group(proc)
    await proc.wait()


def _read_artifact(workspace_path: str) -> bytes:
    path = os.path.join(workspace_path, ARTIFACT_FILENAME)
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise MissingArtifact(f"make reported success but {ARTIFACT_FILENAME} is unreadable: {e}") from e


async def run_make(
    workspace_path: str,
    top_module: str,
    toolchain_dir: str,
    command: Sequence[str] = ("make",),
    timeout: Optional[float] = None,
    log_prefix: str = "[MAKE]",
) -> BuildOutcome:
    """
    Runs the IceStorm make flow for one workspace and collects the bitstream.

    The child is started in its own process group (session) so that a timeout
    or cancellation kills every tool make spawned, not only make itself.

    Args:
        workspace_path (str): Absolute path of the job workspace (BUILD_DIR).
        top_module (str): Name of the top-level module (TOP_MODULE). Must be
            a plain identifier; make would expand `$(...)` in it.
        toolchain_dir (str): Directory holding the synthesis Makefile.
        command (list): Toolchain command; build parameters are appended.
        timeout (float): Seconds before the build is killed. None waits forever.

    Returns:
        Artifact with the bytes of out.bin.cbin, or a Failure describing why
        there is none. Errors are never raised past this function; only task
        cancellation propagates, after the process group has been killed.
    """
    args = list(command) + [f"BUILD_DIR={workspace_path}", f"TOP_MODULE={top_module}"]
    tail: Deque[str] = deque(maxlen=LOG_TAIL_LINES)

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=toolchain_dir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        return Failure.from_error(SpawnError(f"Unable to start {' '.join(args)}: {e}"))

    finished = False
    try:
        pumps = asyncio.gather(
            _pump(proc.stdout, tail, log_prefix),
            _pump(proc.stderr, tail, log_prefix),
        )
        try:
            await asyncio.wait_for(asyncio.gather(pumps, proc.wait()), timeout=timeout)
        except asyncio.TimeoutError:
            raise BuildTimeout(f"make did not finish within {timeout:g}s")
        finished = True

        print(f"{log_prefix} make exit code = {proc.returncode}", flush=True)
        if proc.returncode != 0:
            raise BuildFailure(proc.returncode)

        data = await asyncio.to_thread(_read_artifact, workspace_path)
        return Artifact(data)
    except SynthesisError as e:
        return Failure.from_error(e, log="".join(tail))
    finally:
        # Timeout, cancellation or an unexpected error must not leave any
        # process of the group running, even when make itself already exited.
        if not finished:
            await asyncio.shield(_kill(proc))
