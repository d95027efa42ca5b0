import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "INFERCHAT_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

DEFAULT_LOCAL_MODEL = "orca-mini:latest"
DEFAULT_REMOTE_MODEL = "llama-3.3-70b"
DEFAULT_REMOTE_BASE_URL = "https://api.mor.org/api/v1"


def default_data_dir() -> str:
    return str(Path.home() / ".inferchat")


class EngineConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 11434
    executable: str = "ollama"
    models_env_var: str = "OLLAMA_MODELS"
    startup_timeout_s: float = 30.0
    poll_interval_s: float = 0.5
    probe_timeout_s: float = 2.0
    request_timeout_s: float = 300.0
    stop_grace_s: float = 5.0
    keep_alive: str = "10m"

    model_config = {"protected_namespaces": ()}

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class CatalogConfig(BaseModel):
    primary_url: str = "https://ollamadb.dev/api/v1/models?limit=200"
    secondary_url: str = "https://ollama.com/api/tags"
    timeout_s: float = 15.0
    min_results: int = 10
    cache_enabled: bool = False
    cache_ttl_s: int = 60 * 60

    model_config = {"protected_namespaces": ()}


class RemoteConfig(BaseModel):
    base_url: str = DEFAULT_REMOTE_BASE_URL
    default_model: str = DEFAULT_REMOTE_MODEL
    timeout_s: float = 60.0
    max_retries: int = 2
    backoff_base_s: float = 1.0
    backoff_max_s: float = 8.0
    temperature: float = 0.7
    max_tokens: int = 2048

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    data_dir: str = Field(default_factory=default_data_dir)
    store_filename: str = "store.json"
    registry_cache_filename: str = "registry_cache.db"
    default_local_model: str = DEFAULT_LOCAL_MODEL
    warmup_window_s: float = 5 * 60
    warmup_timeout_s: float = 60.0
    secret_service_name: str = "inferchat"
    host: str = "127.0.0.1"
    port: int = 8000
    engine: EngineConfig = Field(default_factory=EngineConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)

    model_config = {"protected_namespaces": ()}

    @property
    def store_path(self) -> Path:
        return Path(self.data_dir) / self.store_filename

    @property
    def registry_cache_path(self) -> Path:
        return Path(self.data_dir) / self.registry_cache_filename


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "data_dir": os.getenv("INFERCHAT_DATA_DIR"),
        "default_local_model": os.getenv("DEFAULT_LOCAL_MODEL"),
        "warmup_window_s": os.getenv("WARMUP_WINDOW_S"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "engine_host": os.getenv("ENGINE_HOST"),
        "engine_port": os.getenv("ENGINE_PORT"),
        "engine_executable": os.getenv("ENGINE_EXECUTABLE"),
        "engine_startup_timeout_s": os.getenv("ENGINE_STARTUP_TIMEOUT_S"),
        "remote_base_url": os.getenv("REMOTE_BASE_URL"),
        "remote_default_model": os.getenv("REMOTE_DEFAULT_MODEL"),
        "catalog_cache_enabled": os.getenv("CATALOG_CACHE_ENABLED"),
        "catalog_cache_ttl_s": os.getenv("CATALOG_CACHE_TTL_S"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "warmup_window_s" in cleaned:
        cleaned["warmup_window_s"] = float(cleaned["warmup_window_s"])
    if "engine_port" in cleaned:
        cleaned["engine_port"] = int(cleaned["engine_port"])
    if "engine_startup_timeout_s" in cleaned:
        cleaned["engine_startup_timeout_s"] = float(cleaned["engine_startup_timeout_s"])
    if "catalog_cache_enabled" in cleaned:
        cleaned["catalog_cache_enabled"] = str(cleaned["catalog_cache_enabled"]).lower() in ENV_OVERRIDE_TRUE
    if "catalog_cache_ttl_s" in cleaned:
        cleaned["catalog_cache_ttl_s"] = int(cleaned["catalog_cache_ttl_s"])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _nest_flat_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Fold flat env keys (engine_port, remote_base_url, ...) into their nested sections."""
    nested: Dict[str, Any] = {}
    for key, value in data.items():
        for section in ("engine", "catalog", "remote"):
            prefix = f"{section}_"
            if key.startswith(prefix):
                nested.setdefault(section, {})[key[len(prefix):]] = value
                break
        else:
            nested[key] = value
    return nested


def _merge_section(base: Dict[str, Any], top: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in top.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _nest_flat_keys(_load_from_env())
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = _merge_section(file_data, env_data)
    else:
        merged = _merge_section(env_data, file_data)
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
