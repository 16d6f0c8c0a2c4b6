import asyncio
import os
import sys
import time

import pytest

from icestorm_server.config import ServerSettings

# Stands in for `make` in the synthesis directory. Behaviour is selected by the
# TOP_MODULE parameter so each test can pick an outcome.
STUB_TOOLCHAIN = r'''
import os
import subprocess
import sys
import time


def write_pid(path, pid):
    with open(path + ".tmp", "w") as f:
        f.write(str(pid))
    os.replace(path + ".tmp", path)


params = dict(arg.split("=", 1) for arg in sys.argv[1:] if "=" in arg)
build_dir = params["BUILD_DIR"]
top = params["TOP_MODULE"]
print(f"stub: synthesizing {top} in {build_dir}", flush=True)

if top == "broken":
    print("ERROR: syntax error near endmodule", file=sys.stderr, flush=True)
    sys.exit(2)

if top == "noartifact":
    sys.exit(0)

if top == "chatty":
    print("x" * 100000, flush=True)

if top == "slow":
    write_pid("slow.pid", os.getpid())
    time.sleep(60)

if top == "forking":
    # Like make running nextpnr: the real work happens in a grandchild.
    child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    write_pid("grandchild.pid", child.pid)
    time.sleep(60)

if top == "echo":
    time.sleep(0.3)
    data = b""
    for name in sorted(os.listdir(build_dir)):
        with open(os.path.join(build_dir, name), "rb") as f:
            data += f.read()
else:
    data = bytes([0x01, 0x02])

with open(os.path.join(build_dir, "out.bin.cbin"), "wb") as f:
    f.write(data)
'''


@pytest.fixture
def toolchain_dir(tmp_path):
    path = tmp_path / "synthesis"
    path.mkdir()
    (path / "stub_make.py").write_text(STUB_TOOLCHAIN, encoding="utf-8")
    return path


@pytest.fixture
def make_command(toolchain_dir):
    return (sys.executable, str(toolchain_dir / "stub_make.py"))


@pytest.fixture
def settings(tmp_path, toolchain_dir, make_command):
    return ServerSettings(
        port=2019,
        toolchain_dir=str(toolchain_dir),
        make_command=make_command,
        workspace_root=str(tmp_path / "workspaces"),
    )


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    # Killed orphans linger as zombies until init reaps them.
    if not os.path.exists("/proc/self/stat"):
        return True
    try:
        with open(f"/proc/{pid}/stat", "r", encoding="utf-8") as f:
            state = f.read().rsplit(")", 1)[1].split()[0]
    except FileNotFoundError:
        return False
    return state not in ("Z", "X")


async def wait_until_dead(pid: int, timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if not pid_alive(pid):
            return True
        await asyncio.sleep(0.05)
    return not pid_alive(pid)


async def wait_for_pid(path, timeout: float = 10.0) -> int:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                content = f.read().strip()
            if content:
                return int(content)
        await asyncio.sleep(0.05)
    raise AssertionError(f"{path} did not appear within {timeout}s")
