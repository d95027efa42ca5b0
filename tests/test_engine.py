import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from inferchat import engine as engine_module
from inferchat.config import EngineConfig
from inferchat.engine import EngineState, EngineSupervisor, ensure_directory


class ProbeClient:
    def __init__(self, ready: bool = False) -> None:
        self.base_url = "http://127.0.0.1:11434"
        self.ready = ready
        self.probes = 0

    async def probe(self) -> bool:
        self.probes += 1
        return self.ready


class FakeProcess:
    def __init__(self, exit_code: Optional[int] = None, ignore_terminate: bool = False) -> None:
        self.pid = 4242
        self.returncode = exit_code
        self.ignore_terminate = ignore_terminate
        self.terminated = False
        self.killed = False

    def poll(self) -> Optional[int]:
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_terminate:
            self.returncode = -15

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    def wait(self, timeout: Optional[float] = None) -> int:
        if self.returncode is None:
            raise subprocess.TimeoutExpired(cmd="ollama serve", timeout=timeout or 0)
        return self.returncode


class Spawner:
    def __init__(self, process: Optional[FakeProcess] = None, error: Optional[Exception] = None, client=None):
        self.process = process or FakeProcess()
        self.error = error
        self.client = client
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, cmd, **kwargs):
        self.calls.append({"cmd": cmd, **kwargs})
        if self.error is not None:
            raise self.error
        if self.client is not None:
            self.client.ready = True
        return self.process


def _config(**overrides) -> EngineConfig:
    return EngineConfig(startup_timeout_s=0.2, poll_interval_s=0.01, stop_grace_s=0.05, **overrides)


@pytest.mark.asyncio
async def test_already_running_engine_is_adopted_without_spawn(tmp_path):
    client = ProbeClient(ready=True)
    spawner = Spawner()
    supervisor = EngineSupervisor(_config(), client, lambda: str(tmp_path / "models"), popen=spawner)
    assert await supervisor.ensure_running() is True
    assert supervisor.state == EngineState.RUNNING
    assert supervisor.process is None
    assert spawner.calls == []


@pytest.mark.asyncio
async def test_spawns_serve_with_models_dir_and_waits_for_probe(tmp_path):
    client = ProbeClient(ready=False)
    spawner = Spawner(client=client)
    models_dir = tmp_path / "models"
    statuses: List[str] = []
    supervisor = EngineSupervisor(_config(), client, lambda: str(models_dir), popen=spawner)
    supervisor.add_listener(statuses.append)

    assert await supervisor.ensure_running() is True
    assert supervisor.state == EngineState.RUNNING
    assert models_dir.is_dir()
    call = spawner.calls[0]
    assert call["cmd"] == ["ollama", "serve"]
    assert call["env"]["OLLAMA_MODELS"] == str(models_dir)
    assert statuses[-1] == "Local engine is running"
    assert supervisor.status()["lastStatus"] == "Local engine is running"


@pytest.mark.asyncio
async def test_launch_failure_reports_false(tmp_path):
    client = ProbeClient(ready=False)
    spawner = Spawner(error=FileNotFoundError("ollama"))
    supervisor = EngineSupervisor(_config(), client, lambda: str(tmp_path), popen=spawner)
    assert await supervisor.ensure_running() is False
    assert supervisor.state == EngineState.STOPPED
    assert supervisor.process is None
    assert "Failed to launch" in supervisor.last_status


@pytest.mark.asyncio
async def test_readiness_timeout_terminates_child(tmp_path):
    client = ProbeClient(ready=False)
    process = FakeProcess()
    supervisor = EngineSupervisor(_config(), client, lambda: str(tmp_path), popen=Spawner(process=process))
    assert await supervisor.ensure_running() is False
    assert process.terminated is True
    assert supervisor.state == EngineState.STOPPED
    assert supervisor.process is None


@pytest.mark.asyncio
async def test_child_exiting_early_fails_fast(tmp_path):
    client = ProbeClient(ready=False)
    process = FakeProcess(exit_code=1)
    supervisor = EngineSupervisor(
        EngineConfig(startup_timeout_s=30.0, poll_interval_s=0.01),
        client,
        lambda: str(tmp_path),
        popen=Spawner(process=process),
    )
    assert await supervisor.ensure_running() is False
    assert supervisor.state == EngineState.STOPPED


@pytest.mark.asyncio
async def test_stop_kills_after_grace_period(tmp_path):
    client = ProbeClient(ready=False)
    process = FakeProcess(ignore_terminate=True)
    supervisor = EngineSupervisor(_config(), client, lambda: str(tmp_path), popen=Spawner(process=process, client=client))
    assert await supervisor.ensure_running() is True
    await supervisor.stop()
    assert process.terminated is True
    assert process.killed is True
    assert supervisor.state == EngineState.STOPPED
    assert supervisor.process is None


@pytest.mark.asyncio
async def test_stop_without_child_is_noop(tmp_path):
    supervisor = EngineSupervisor(_config(), ProbeClient(ready=True), lambda: str(tmp_path))
    await supervisor.stop()
    assert supervisor.state == EngineState.STOPPED


def test_ensure_directory_escalates_on_permission_error(tmp_path, monkeypatch):
    calls: List[List[str]] = []

    def deny(self, *args, **kwargs):
        raise PermissionError("denied")

    def fake_check_output(cmd, **kwargs):
        calls.append(cmd)
        return ""

    monkeypatch.setattr(Path, "mkdir", deny)
    monkeypatch.setattr(engine_module.shutil, "which", lambda name: None)
    monkeypatch.setattr(engine_module.subprocess, "check_output", fake_check_output)
    ensure_directory(str(tmp_path / "locked"))
    assert calls == [["sudo", "-n", "mkdir", "-p", str(tmp_path / "locked")]]


def test_ensure_directory_prefers_pkexec(tmp_path, monkeypatch):
    calls: List[List[str]] = []

    def deny(self, *args, **kwargs):
        raise PermissionError("denied")

    monkeypatch.setattr(Path, "mkdir", deny)
    monkeypatch.setattr(engine_module.shutil, "which", lambda name: "/usr/bin/pkexec")
    monkeypatch.setattr(engine_module.subprocess, "check_output", lambda cmd, **kw: calls.append(cmd) or "")
    ensure_directory("/opt/models")
    assert calls == [["pkexec", "mkdir", "-p", "/opt/models"]]


class SlowStartClient(ProbeClient):
    """Fails a fixed number of probes before answering again."""

    def __init__(self, failures: int) -> None:
        super().__init__(ready=True)
        self.failures = failures

    async def probe(self) -> bool:
        self.probes += 1
        if self.failures > 0:
            self.failures -= 1
            return False
        return self.ready


@pytest.mark.asyncio
async def test_slow_startup_does_not_spawn_second_child(tmp_path):
    client = ProbeClient(ready=False)
    first = FakeProcess()
    spawner = Spawner(process=first, client=client)
    supervisor = EngineSupervisor(_config(), client, lambda: str(tmp_path), popen=spawner)
    assert await supervisor.ensure_running() is True

    flaky = SlowStartClient(failures=1)
    supervisor.client = flaky
    assert await supervisor.ensure_running() is True
    assert len(spawner.calls) == 1
    assert supervisor.process is first
    assert supervisor.state == EngineState.RUNNING

    await supervisor.stop()
    assert first.terminated is True
    assert supervisor.process is None


@pytest.mark.asyncio
async def test_unresponsive_child_is_terminated_not_orphaned(tmp_path):
    client = ProbeClient(ready=False)
    first = FakeProcess()
    spawner = Spawner(process=first, client=client)
    supervisor = EngineSupervisor(_config(), client, lambda: str(tmp_path), popen=spawner)
    assert await supervisor.ensure_running() is True

    client.ready = False
    assert await supervisor.ensure_running() is False
    assert len(spawner.calls) == 1
    assert first.terminated is True
    assert supervisor.process is None
    await supervisor.stop()
    assert supervisor.state == EngineState.STOPPED


@pytest.mark.asyncio
async def test_exited_child_is_replaced(tmp_path):
    client = ProbeClient(ready=False)
    first = FakeProcess()
    spawner = Spawner(process=first, client=client)
    supervisor = EngineSupervisor(_config(), client, lambda: str(tmp_path), popen=spawner)
    assert await supervisor.ensure_running() is True

    first.returncode = 1
    client.ready = False
    second = FakeProcess()
    spawner.process = second
    assert await supervisor.ensure_running() is True
    assert len(spawner.calls) == 2
    assert supervisor.process is second
