import logging
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import aiosqlite
import httpx
import psutil

from .config import CatalogConfig
from .errors import DiskSpaceError, InferenceError, ParseError
from .local_engine import LocalEngineClient, ProgressCallback
from .registry_cache import RegistryCacheStore
from .schemas import CacheStatus, DiskSpaceCheck, DiskSpaceInfo, ModelDescriptor


logger = logging.getLogger("uvicorn.error")

GIB = 1024 * 1024 * 1024
DEFAULT_MODEL_SIZE = int(4.1 * GIB)
REGISTRY_HEADERS = {"Accept": "application/json", "User-Agent": "inferchat/0.1"}

_PARAM_RE = re.compile(r"(?<![a-z0-9.])(\d+(?:\.\d+)?)b(?![a-z0-9])")

# (upper bound in billions of parameters, approximate quantized download size in GiB)
_SIZE_CLASSES: List[Tuple[float, float]] = [
    (0.6, 0.4),
    (1.1, 0.8),
    (1.8, 1.1),
    (2.7, 1.7),
    (3.8, 2.0),
    (4.5, 2.5),
    (9.0, 4.1),
    (12.0, 7.4),
    (15.0, 8.5),
    (34.0, 19.0),
    (80.0, 40.0),
    (250.0, 142.0),
]
_LARGEST_CLASS_GIB = 404.0

_FAMILY_SIZES: List[Tuple[Tuple[str, ...], float]] = [
    (("orca-mini",), 1.9),
    (("phi4", "phi-4"), 9.1),
    (("phi3", "phi-3"), 2.2),
]

_FAMILY_PARAMS: List[Tuple[Tuple[str, ...], str]] = [
    (("phi4", "phi-4"), "14B"),
    (("phi3", "phi-3"), "3.8B"),
    (("phi2", "phi-2"), "2.7B"),
    (("orca-mini",), "3B"),
    (("gemma",), "7B"),
]

_FAMILY_TAGS = ["llama", "mistral", "gemma", "qwen", "phi", "deepseek", "nomic", "llava", "orca", "neural", "code"]
_SIZE_TAGS = ["3b", "7b", "13b", "70b"]


def _parameter_billions(name: str) -> Optional[float]:
    match = _PARAM_RE.search(name.lower())
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def extract_parameter_size(name: str) -> Optional[str]:
    """Parameter-count label such as "7B" parsed from a model name, or None."""
    lowered = name.lower()
    match = _PARAM_RE.search(lowered)
    if match:
        return f"{match.group(1)}B"
    for needles, label in _FAMILY_PARAMS:
        if any(n in lowered for n in needles):
            return label
    return None


def estimate_model_size(name: str) -> int:
    """Estimated download size in bytes for a model name without a reported size.

    Known families win over the parameter token; names carrying neither land in the 7B class.
    """
    lowered = name.lower()
    for needles, gib in _FAMILY_SIZES:
        if any(n in lowered for n in needles):
            return int(gib * GIB)
    billions = _parameter_billions(lowered)
    if billions is None:
        return DEFAULT_MODEL_SIZE
    for upper, gib in _SIZE_CLASSES:
        if billions <= upper:
            return int(gib * GIB)
    return int(_LARGEST_CLASS_GIB * GIB)


def generate_tags(name: str, description: str = "", url: str = "") -> List[str]:
    lowered = name.lower()
    desc = (description or "").lower()
    link = (url or "").lower()
    tags: List[str] = [family for family in _FAMILY_TAGS if family in lowered]
    tags.extend(size for size in _SIZE_TAGS if size in lowered)
    if "code" in desc or "code" in lowered or "code" in link:
        tags.append("programming")
    if "chat" in desc or "chat" in link:
        tags.append("chat")
    if "vision" in desc or "llava" in lowered or "vision" in link:
        tags.append("vision")
    if "embed" in desc or "embed" in link:
        tags.append("embedding")
    if "text" in desc or "text" in link:
        tags.append("text")
    if "instruct" in desc or "instruct" in link:
        tags.append("instruct")
    tags.extend(["ai", "llm"])
    return list(dict.fromkeys(tags))


def _curated(name: str, description: str, size_gib: float, tags: Iterable[str]) -> ModelDescriptor:
    return ModelDescriptor(
        name=name,
        description=description,
        size_bytes=int(size_gib * GIB),
        tags=list(tags),
        parameter_size=extract_parameter_size(name),
    )


CURATED_MODELS: List[ModelDescriptor] = [
    _curated("llama2", "Meta's Llama 2 collection of pretrained and fine-tuned text models", 3.8, ["llama", "meta", "chat"]),
    _curated("llama2:7b", "Llama 2 7B, a balance of quality and resource use", 3.8, ["llama", "meta", "7b"]),
    _curated("llama2:13b", "Llama 2 13B, higher quality responses", 7.3, ["llama", "meta", "13b"]),
    _curated("llama2:70b", "Llama 2 70B, highest quality, needs substantial resources", 39, ["llama", "meta", "70b"]),
    _curated("codellama", "Code Llama models for code generation and discussion", 3.8, ["code", "llama", "programming"]),
    _curated("codellama:7b", "Code Llama 7B for code generation and understanding", 3.8, ["code", "llama", "7b", "programming"]),
    _curated("mistral", "Mistral 7B, updated to version 0.3", 4.1, ["mistral", "7b", "tools"]),
    _curated("mistral:7b", "Mistral 7B, a strong general 7B model", 4.1, ["mistral", "7b"]),
    _curated("orca-mini", "Orca Mini, a small general-purpose model", 1.9, ["orca", "microsoft", "3b"]),
    _curated("orca-mini:3b", "Orca Mini 3B, lightweight model for basic tasks", 1.9, ["orca", "microsoft", "3b"]),
    _curated("neural-chat", "Neural Chat, a 7B model fine-tuned for chat", 4.1, ["neural", "chat", "7b"]),
    _curated("deepseek-r1", "DeepSeek-R1 family of open reasoning models", 4.1, ["deepseek", "reasoning", "tools"]),
    _curated("gemma3", "Gemma 3, a capable model that runs on a single GPU", 4.1, ["gemma", "google", "vision"]),
    _curated("qwen3", "Qwen3, the latest generation of the Qwen series", 4.1, ["qwen", "alibaba", "tools", "thinking"]),
    _curated("llama3.1", "Llama 3.1 from Meta in 8B, 70B and 405B sizes", 4.1, ["llama", "meta", "tools"]),
    _curated("llava", "LLaVA multimodal model for visual and language understanding", 4.1, ["llava", "vision", "multimodal"]),
    _curated("phi3", "Phi-3 lightweight open models by Microsoft", 2.2, ["phi", "microsoft"]),
    _curated("gemma2", "Google Gemma 2 in 2B, 9B and 27B sizes", 4.1, ["gemma", "google"]),
    _curated("qwen2.5-coder", "Code-specific Qwen models", 4.1, ["qwen", "code", "tools"]),
    _curated("neural-chat:7b", "Neural Chat 7B, optimized for conversation", 4.1, ["neural", "chat", "7b"]),
]


def _first_str(item: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def decode_registry_record(item: Any) -> Optional[ModelDescriptor]:
    """Map one registry record onto a descriptor; records without a usable name are skipped."""
    if not isinstance(item, dict):
        return None
    name = _first_str(item, "model_name", "model_identifier", "name", "model")
    if not name:
        return None
    description = _first_str(item, "description")
    url = _first_str(item, "url", "source_url")
    size = item.get("size")
    if isinstance(size, bool) or not isinstance(size, (int, float)) or size <= 0:
        size_bytes = estimate_model_size(name)
    else:
        size_bytes = int(size)
    return ModelDescriptor(
        name=name,
        size_bytes=size_bytes,
        tags=generate_tags(name, description, url),
        digest=_first_str(item, "digest"),
        source_url=url,
        description=description,
        modified_at=_first_str(item, "last_updated", "modified_at") or None,
        parameter_size=extract_parameter_size(name),
    )


def _registry_items(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("models", "data", "results"):
            items = payload.get(key)
            if isinstance(items, list):
                return items
    raise ParseError("Registry response carried no model list")


def _existing_path(path: str) -> str:
    candidate = Path(path)
    while not candidate.exists() and candidate.parent != candidate:
        candidate = candidate.parent
    return str(candidate)


class ModelCatalog:
    """Installable and installed models: registry listing, size estimates, disk checks, pulls."""

    def __init__(
        self,
        config: CatalogConfig,
        engine_client: LocalEngineClient,
        data_dir: str,
        *,
        cache_store: Optional[RegistryCacheStore] = None,
        on_status: Optional[ProgressCallback] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.engine_client = engine_client
        self.data_dir = data_dir
        self.cache_store = cache_store
        self.on_status = on_status
        self._clock = clock
        self._memory: Optional[Tuple[List[ModelDescriptor], float]] = None
        self.client = httpx.AsyncClient(timeout=config.timeout_s, headers=REGISTRY_HEADERS)

    async def init(self) -> None:
        if self.cache_store is not None:
            await self.cache_store.init()

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()

    # registry

    async def _fetch_source(self, url: str) -> List[ModelDescriptor]:
        resp = await self.client.get(url)
        resp.raise_for_status()
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ParseError(f"Registry at {url} returned invalid JSON") from exc
        decoded = (decode_registry_record(item) for item in _registry_items(payload))
        return [m for m in decoded if m is not None]

    async def _fetch_registry(self) -> List[ModelDescriptor]:
        try:
            models = await self._fetch_source(self.config.primary_url)
        except (httpx.HTTPError, ParseError) as exc:
            logger.warning("Primary registry failed (%s); trying %s", exc, self.config.secondary_url)
            models = await self._fetch_source(self.config.secondary_url)
        logger.info("Fetched %d models from registry", len(models))
        if len(models) < self.config.min_results:
            existing = {m.name for m in models}
            extra = [m.model_copy(deep=True) for m in CURATED_MODELS if m.name not in existing]
            logger.info("Registry returned %d models; adding %d curated entries", len(models), len(extra))
            models = models + extra
        return models

    async def _cached(self) -> Optional[Tuple[List[ModelDescriptor], float]]:
        if self._memory is not None:
            return self._memory
        if self.cache_store is None:
            return None
        try:
            loaded = await self.cache_store.load()
        except (aiosqlite.Error, OSError, ValueError) as exc:
            logger.warning("Registry cache unreadable: %s", exc)
            return None
        if loaded is not None:
            self._memory = loaded
        return loaded

    def _is_fresh(self, fetched_at: float) -> bool:
        return (self._clock() - fetched_at) < self.config.cache_ttl_s

    async def _remember(self, models: List[ModelDescriptor]) -> None:
        fetched_at = self._clock()
        self._memory = (models, fetched_at)
        if self.cache_store is None:
            return
        try:
            await self.cache_store.save(models, fetched_at)
        except (aiosqlite.Error, OSError) as exc:
            logger.warning("Failed to persist registry cache: %s", exc)

    async def list_remote_catalog(self, force_refresh: bool = False) -> List[ModelDescriptor]:
        models: Optional[List[ModelDescriptor]] = None
        if self.config.cache_enabled and not force_refresh:
            cached = await self._cached()
            if cached is not None and self._is_fresh(cached[1]):
                logger.info("Serving registry from cache")
                models = cached[0]
        if models is None:
            try:
                models = await self._fetch_registry()
                if self.config.cache_enabled:
                    await self._remember(models)
            except (httpx.HTTPError, ParseError) as exc:
                logger.error("Failed to fetch models from registry: %s", exc)
                cached = await self._cached() if self.config.cache_enabled else None
                if cached is not None:
                    logger.info("Serving stale registry cache")
                    models = cached[0]
                else:
                    logger.info("Registry unavailable and no cache; serving curated list")
                    models = [m.model_copy(deep=True) for m in CURATED_MODELS]
        return await self._reconcile(models)

    async def _installed_names(self) -> Set[str]:
        try:
            return {m.name for m in await self.engine_client.list_models()}
        except InferenceError as exc:
            logger.warning("Could not list local models for reconciliation: %s", exc)
            return set()

    async def _reconcile(self, models: List[ModelDescriptor]) -> List[ModelDescriptor]:
        installed = await self._installed_names()
        return [m.model_copy(update={"is_installed": m.name in installed}) for m in models]

    async def clear_cache(self) -> bool:
        self._memory = None
        if self.cache_store is not None:
            try:
                await self.cache_store.clear()
            except (aiosqlite.Error, OSError) as exc:
                logger.warning("Failed to clear on-disk registry cache: %s", exc)
        logger.info("Registry cache cleared")
        return True

    async def cache_status(self) -> CacheStatus:
        cached = await self._cached() if self.config.cache_enabled else self._memory
        if cached is None:
            return CacheStatus(
                enabled=self.config.cache_enabled,
                has_cache=False,
                age=None,
                is_expired=True,
                cache_duration=self.config.cache_ttl_s,
            )
        age = max(0.0, self._clock() - cached[1])
        return CacheStatus(
            enabled=self.config.cache_enabled,
            has_cache=True,
            age=age,
            is_expired=age > self.config.cache_ttl_s,
            cache_duration=self.config.cache_ttl_s,
        )

    # disk

    def check_disk_space(self, required_bytes: int) -> DiskSpaceCheck:
        try:
            usage = psutil.disk_usage(_existing_path(self.data_dir))
        except OSError as exc:
            logger.error("Failed to check disk space: %s", exc)
            return DiskSpaceCheck(has_enough_space=False, free_bytes=0, required_bytes=required_bytes, error=str(exc))
        return DiskSpaceCheck(
            has_enough_space=usage.free > required_bytes,
            free_bytes=usage.free,
            required_bytes=required_bytes,
        )

    def get_disk_space_info(self) -> DiskSpaceInfo:
        try:
            usage = psutil.disk_usage(_existing_path(self.data_dir))
        except OSError as exc:
            logger.error("Failed to get disk space info: %s", exc)
            return DiskSpaceInfo(free_bytes=0, total_bytes=0, used_bytes=0, error=str(exc))
        return DiskSpaceInfo(free_bytes=usage.free, total_bytes=usage.total, used_bytes=usage.total - usage.free)

    # installed models

    async def _status(self, message: str) -> None:
        if self.on_status is None or not message:
            return
        result = self.on_status(message)
        if result is not None:
            await result

    async def list_local_models(self) -> List[ModelDescriptor]:
        return await self.engine_client.list_models()

    async def get_current_model(self) -> Optional[ModelDescriptor]:
        try:
            loaded = await self.engine_client.list_loaded()
        except InferenceError as exc:
            logger.error("Failed to get current model: %s", exc)
            return None
        return loaded[0] if loaded else None

    async def find_local_model(self, name: str) -> Optional[ModelDescriptor]:
        models = await self.list_local_models()
        for model in models:
            if model.name == name:
                return model
        lowered = name.lower()
        for model in models:
            if lowered in model.name.lower():
                return model
        return None

    async def get_or_pull_model(self, name: str) -> Optional[ModelDescriptor]:
        """Install the model when missing, load it into memory, and return its descriptor."""
        existing = await self.find_local_model(name)
        if existing is None:
            required = estimate_model_size(name)
            check = self.check_disk_space(required)
            if check.error is None and not check.has_enough_space:
                raise DiskSpaceError(
                    f"Not enough disk space to pull {name}: "
                    f"{check.free_bytes / GIB:.2f} GiB free, about {required / GIB:.2f} GiB required"
                )
            await self._status(f"Pulling model {name}")
            await self.engine_client.pull(name, on_progress=self.on_status)
        await self._status(f"Loading model {name}")
        await self.engine_client.warm_up(name)
        return existing or await self.find_local_model(name)

    async def delete_model(self, name: str) -> bool:
        try:
            await self.engine_client.delete(name)
        except InferenceError as exc:
            logger.error("Failed to delete model %s: %s", name, exc)
            return False
        logger.info("Deleted model %s", name)
        return True

    async def pull_and_replace(self, name: str) -> bool:
        try:
            current = await self.get_current_model()
            await self._status(f"Pulling new model: {name}")
            await self.engine_client.pull(name, on_progress=self.on_status)
            if current is not None and current.name != name:
                await self._status(f"Deleting old model: {current.name} to save space")
                await self.engine_client.delete(current.name)
            await self._status(f"Loading model {name}")
            await self.engine_client.warm_up(name)
        except InferenceError as exc:
            logger.error("Failed to pull and replace with %s: %s", name, exc)
            await self._status(f"Failed to switch to {name}")
            return False
        await self._status(f"Now using {name}")
        return True
