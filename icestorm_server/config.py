import os
import shlex
from dataclasses import dataclass, field
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

DEFAULT_PORT = 2019
DEFAULT_HOST = "0.0.0.0"
DEFAULT_TOOLCHAIN_DIR = "./synthesis"
DEFAULT_MAKE = "make"

WORKSPACE_PREFIX = "icestorm-server_"
ARTIFACT_FILENAME = "out.bin.cbin"


@dataclass(frozen=True)
class ServerSettings:
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    toolchain_dir: str = DEFAULT_TOOLCHAIN_DIR
    make_command: Tuple[str, ...] = field(default=(DEFAULT_MAKE,))
    # None means the system temp directory.
    workspace_root: Optional[str] = None
    # None disables the build timeout.
    timeout_sec: Optional[float] = None


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def load_settings() -> ServerSettings:
    """
    Builds settings from the environment (and a .env file, if present).

    PORT wins over the lowercase `port` variable that older deployments set.
    """
    port = _int_env("PORT", _int_env("port", DEFAULT_PORT))
    if not 0 < port < 65536:
        raise ValueError(f"PORT out of range: {port}")

    make_command = tuple(shlex.split(os.environ.get("SYNTH_MAKE", DEFAULT_MAKE)))
    if not make_command:
        raise ValueError("SYNTH_MAKE must not be empty")

    timeout = _int_env("SYNTH_TIMEOUT_SEC", 0)
    if timeout < 0:
        raise ValueError(f"SYNTH_TIMEOUT_SEC must be >= 0, got {timeout}")

    return ServerSettings(
        port=port,
        host=os.environ.get("HOST", DEFAULT_HOST),
        toolchain_dir=os.path.abspath(os.environ.get("SYNTH_TOOLCHAIN_DIR", DEFAULT_TOOLCHAIN_DIR)),
        make_command=make_command,
        workspace_root=os.environ.get("SYNTH_WORKSPACE_ROOT") or None,
        timeout_sec=float(timeout) if timeout else None,
    )
