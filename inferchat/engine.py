import asyncio
import logging
import os
import shutil
import subprocess
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import EngineConfig
from .local_engine import LocalEngineClient


logger = logging.getLogger("uvicorn.error")

_ELEVATED_MKDIR_TIMEOUT_S = 60.0

StatusListener = Callable[[str], None]


class EngineState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


def ensure_directory(path: str) -> None:
    """Create the model storage directory, escalating privileges when a plain mkdir is refused."""
    try:
        Path(path).mkdir(parents=True, exist_ok=True)
        return
    except PermissionError:
        logger.warning("Permission denied creating %s; retrying with elevated privileges", path)
    if shutil.which("pkexec"):
        cmd = ["pkexec", "mkdir", "-p", path]
    else:
        cmd = ["sudo", "-n", "mkdir", "-p", path]
    subprocess.check_output(cmd, stderr=subprocess.STDOUT, timeout=_ELEVATED_MKDIR_TIMEOUT_S, text=True)


class EngineSupervisor:
    """Detects, spawns and stops the local inference engine process."""

    def __init__(
        self,
        config: EngineConfig,
        client: LocalEngineClient,
        models_dir: Callable[[], str],
        *,
        popen: Callable[..., Any] = subprocess.Popen,
    ) -> None:
        self.config = config
        self.client = client
        self._models_dir = models_dir
        self._popen = popen
        self.process: Optional[Any] = None
        self.state = EngineState.STOPPED
        self.last_status = "Local engine not started"
        self._listeners: List[StatusListener] = []
        self._lock = asyncio.Lock()

    @property
    def engine_url(self) -> str:
        return self.client.base_url

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, message: str) -> None:
        self.last_status = message
        logger.info("Engine: %s", message)
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.exception("Engine status listener failed")

    def status(self) -> Dict[str, Any]:
        return {"state": self.state.value, "lastStatus": self.last_status, "engineUrl": self.engine_url}

    async def is_ready(self) -> bool:
        return await self.client.probe()

    async def ensure_running(self) -> bool:
        async with self._lock:
            if await self.client.probe():
                if self.state != EngineState.RUNNING:
                    self.state = EngineState.RUNNING
                    self.publish("Local engine is running")
                return True

            self.state = EngineState.STARTING
            if self.process is not None and self.process.poll() is None:
                # our own child is alive but not answering yet; never start a second one
                self.publish("Local engine process alive but not responding; waiting")
            else:
                if self.process is not None:
                    logger.warning("Local engine exited with code %s; restarting", self.process.returncode)
                    self.process = None
                models_dir = self._models_dir()
                self.publish(f"Starting local engine (models in {models_dir})")
                try:
                    await asyncio.to_thread(ensure_directory, models_dir)
                    self.process = await asyncio.to_thread(self._spawn, models_dir)
                except (OSError, subprocess.SubprocessError, ValueError) as exc:
                    logger.error("Failed to launch local engine: %s", exc)
                    self.process = None
                    self.state = EngineState.STOPPED
                    self.publish(f"Failed to launch local engine: {exc}")
                    return False

            self.publish("Waiting for local engine to become ready")
            try:
                ready = await asyncio.wait_for(self._wait_until_ready(), timeout=self.config.startup_timeout_s)
            except asyncio.TimeoutError:
                ready = False
                logger.error("Local engine not ready after %.1fs", self.config.startup_timeout_s)

            if not ready:
                await self._terminate()
                self.state = EngineState.STOPPED
                self.publish("Local engine failed to become ready")
                return False

            self.state = EngineState.RUNNING
            self.publish("Local engine is running")
            return True

    def _spawn(self, models_dir: str) -> Any:
        env = {**os.environ, self.config.models_env_var: models_dir}
        if self.config.host and self.config.port:
            env.setdefault("OLLAMA_HOST", f"{self.config.host}:{self.config.port}")
        process = self._popen(
            [self.config.executable, "serve"],
            env=env,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        logger.info("Local engine started with PID %s", getattr(process, "pid", "?"))
        return process

    async def _wait_until_ready(self) -> bool:
        while True:
            if self.process is not None and self.process.poll() is not None:
                logger.error("Local engine exited during startup with code %s", self.process.returncode)
                return False
            if await self.client.probe():
                return True
            await asyncio.sleep(self.config.poll_interval_s)

    async def _terminate(self) -> None:
        process = self.process
        self.process = None
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            await asyncio.to_thread(process.wait, self.config.stop_grace_s)
        except subprocess.TimeoutExpired:
            logger.warning("Local engine ignored terminate; killing PID %s", getattr(process, "pid", "?"))
            process.kill()
            await asyncio.to_thread(process.wait, self.config.stop_grace_s)

    async def stop(self) -> None:
        async with self._lock:
            if self.process is None:
                return
            self.state = EngineState.STOPPING
            self.publish("Stopping local engine")
            await self._terminate()
            self.state = EngineState.STOPPED
            self.publish("Local engine stopped")
