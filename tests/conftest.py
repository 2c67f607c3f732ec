"""Shared fixtures: a fake llama-server executable, a model file and a scripted prober."""

from __future__ import annotations

import socket
import stat
import sys
from pathlib import Path

import pytest

from llamarun.models import HealthProbeResult
from llamarun.runtime.health import HealthProber
from llamarun.runtime.logging import LogRingBuffer
from llamarun.runtime.supervisor import RuntimeState, RuntimeSupervisor
from llamarun.settings import RuntimeSettings

FAKE_SERVER_SCRIPT = """#!{python}
import sys
import time

print("fake llama-server starting", flush=True)
print("llama_model_loader: loaded meta data", file=sys.stderr, flush=True)
if {exit_code} >= 0:
    sys.exit({exit_code})
time.sleep(60)
"""


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def write_fake_server(tool_root: Path, name: str = "llama-server", exit_code: int = -1) -> Path:
    """Create an executable script standing in for llama-server.

    With the default exit_code the script prints two lines and sleeps;
    otherwise it prints and exits with that code.
    """
    server_dir = tool_root / "runtime" / "llama"
    server_dir.mkdir(parents=True, exist_ok=True)
    path = server_dir / name
    path.write_text(FAKE_SERVER_SCRIPT.format(python=sys.executable, exit_code=exit_code))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


class ScriptedProber(HealthProber):
    """Prober that reports a spawned child healthy on its Nth readiness probe.

    Ports in ``external_ports`` always answer, standing in for a server some
    earlier session left running.
    """

    def __init__(
        self,
        state: RuntimeState,
        healthy_after: int | None = 1,
        external_ports: set[int] | None = None,
    ) -> None:
        super().__init__()
        self.state = state
        self.healthy_after = healthy_after
        self.external_ports: set[int] = external_ports or set()
        self.readiness_probes = 0
        self.children: list[object] = []

    async def probe(self, port: int) -> HealthProbeResult:
        if port in self.external_ports:
            return HealthProbeResult(healthy=True, endpoint=self.url_for(port, "/health"))
        child = self.state.child
        if child is None or self.state.port != port:
            return HealthProbeResult(healthy=False)
        if not self.children or self.children[-1] is not child:
            self.children.append(child)
        self.readiness_probes += 1
        if self.healthy_after is not None and self.readiness_probes >= self.healthy_after:
            return HealthProbeResult(healthy=True, endpoint=self.url_for(port, "/health"))
        return HealthProbeResult(healthy=False)


@pytest.fixture
def tool_root(tmp_path: Path) -> Path:
    root = tmp_path / "tools"
    write_fake_server(root)
    return root


@pytest.fixture
def model_file(tmp_path: Path) -> Path:
    path = tmp_path / "models" / "model.gguf"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"GGUF")
    return path


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings(
        default_port=free_port(),
        scan_size=3,
        ready_timeout=5.0,
        ready_poll_interval=0.05,
        probe_timeout=0.2,
    )


@pytest.fixture
def make_fake_server():
    return write_fake_server


@pytest.fixture
def make_free_port():
    return free_port


@pytest.fixture
def make_supervisor(settings: RuntimeSettings):
    """Build a supervisor wired to a ScriptedProber; returns (supervisor, prober)."""

    def factory(
        healthy_after: int | None = 1, external_ports: set[int] | None = None
    ) -> tuple[RuntimeSupervisor, ScriptedProber]:
        state = RuntimeState()
        prober = ScriptedProber(state, healthy_after, external_ports)
        supervisor = RuntimeSupervisor(
            settings, state, LogRingBuffer(settings.log_lines), prober
        )
        return supervisor, prober

    return factory
