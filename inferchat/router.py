import logging
from typing import Any, Callable, Dict, List, Optional

from .catalog import ModelCatalog
from .config import AppSettings
from .engine import EngineSupervisor
from .errors import (
    AuthError,
    BadRequestError,
    EngineUnavailableError,
    FallbackFailedError,
    InferenceError,
    ModelNotFoundError,
)
from .local_engine import LocalEngineClient
from .prompts import annotate_fallback, build_messages
from .remote import RemoteInferenceClient
from .schemas import InferenceConfig, InferenceMode, InferenceModel, InferenceResult, ModelDescriptor, RemoteApiConfig
from .store import Store


logger = logging.getLogger("uvicorn.error")

API_KEY_MASK = "********"
_NO_FALLBACK_STATUSES = {400, 401, 403}
_NO_FALLBACK_MARKERS = ("unauthorized", "api key", "bad request")
_FALLBACK_MARKERS = ("timeout", "network", "econnrefused")

RemoteFactory = Callable[[RemoteApiConfig], Any]


def should_fallback_to_local(error: Optional[BaseException]) -> bool:
    """Whether a failed remote call may be retried against the local engine."""
    if error is None:
        return True
    status = getattr(error, "status_code", None)
    message = str(error).lower()
    if isinstance(error, (AuthError, BadRequestError)):
        return False
    if status in _NO_FALLBACK_STATUSES or any(marker in message for marker in _NO_FALLBACK_MARKERS):
        return False
    if (isinstance(status, int) and status >= 500) or any(marker in message for marker in _FALLBACK_MARKERS):
        logger.debug("Remote failure is transient: %s", error)
        return True
    logger.debug("Remote failure is unclassified, falling back: %s", error)
    return True


class InferenceRouter:
    """Owns the inference mode and credentials, and dispatches questions to a backend."""

    def __init__(
        self,
        settings: AppSettings,
        store: Store,
        catalog: ModelCatalog,
        supervisor: EngineSupervisor,
        engine_client: LocalEngineClient,
        *,
        remote_factory: Optional[RemoteFactory] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.catalog = catalog
        self.supervisor = supervisor
        self.engine_client = engine_client
        self._remote_factory = remote_factory or self._default_remote_factory
        self._config = InferenceConfig()
        self._secrets_encrypted = False
        self._remote: Optional[Any] = None

    def _default_remote_factory(self, remote_config: RemoteApiConfig) -> RemoteInferenceClient:
        return RemoteInferenceClient(
            remote_config.api_key,
            remote_config.base_url or self.settings.remote.base_url,
            config=self.settings.remote,
        )

    async def init(self) -> None:
        self._config, self._secrets_encrypted = self.store.get_inference_config()
        await self._rebuild_remote()
        logger.info(
            "Inference mode %s (remote %s)",
            self._config.mode,
            "configured" if self._remote is not None else "not configured",
        )

    async def _rebuild_remote(self) -> None:
        if self._remote is not None:
            await self._remote.close()
            self._remote = None
        remote_config = self._config.remote_config
        if remote_config is not None and remote_config.api_key:
            self._remote = self._remote_factory(remote_config)

    async def close(self) -> None:
        if self._remote is not None:
            await self._remote.close()
            self._remote = None

    # mode and config

    def get_mode(self) -> InferenceMode:
        return self._config.mode

    def set_mode(self, mode: str) -> None:
        if mode not in ("local", "remote"):
            raise BadRequestError(f"Unknown inference mode: {mode}", field="mode")
        self._config = self._config.model_copy(update={"mode": mode})
        self._secrets_encrypted = self.store.save_inference_config(self._config)
        logger.info("Inference mode set to %s", mode)

    def get_config(self) -> InferenceConfig:
        return self._config.model_copy(deep=True)

    async def set_config(self, config: InferenceConfig) -> bool:
        incoming = config.remote_config
        current = self._config.remote_config
        if incoming is not None and incoming.api_key == API_KEY_MASK:
            # a masked key coming back from the UI means "unchanged"
            kept = current.api_key if current is not None else ""
            config = config.model_copy(update={"remote_config": incoming.model_copy(update={"api_key": kept})})
        self._secrets_encrypted = self.store.save_inference_config(config)
        self._config = config
        await self._rebuild_remote()
        return self._secrets_encrypted

    def safe_config(self) -> Dict[str, Any]:
        data = self._config.to_wire()
        remote = data.get("remoteConfig")
        if isinstance(remote, dict) and remote.get("apiKey"):
            remote["apiKey"] = API_KEY_MASK
        return data

    @property
    def secrets_encrypted(self) -> bool:
        return self._secrets_encrypted

    @property
    def remote_configured(self) -> bool:
        return self._remote is not None

    async def test_connection(self) -> bool:
        if self._remote is None:
            return False
        return await self._remote.test_connection()

    # model resolution

    async def resolve_local_model(self, model: Optional[str] = None) -> str:
        if model:
            return model
        try:
            installed = [m.name for m in await self.catalog.list_local_models()]
        except InferenceError as exc:
            logger.warning("Could not list local models: %s", exc)
            installed = []
        last_used = self.store.get_last_used_local_model()
        if last_used and last_used in installed:
            return last_used
        if last_used:
            logger.info("Stored model %s not installed, looking further", last_used)
        current = await self.catalog.get_current_model()
        if current is not None:
            return current.name
        if installed:
            return installed[0]
        default = self.settings.default_local_model
        logger.info("No local models found, acquiring default %s", default)
        try:
            await self.catalog.get_or_pull_model(default)
        except InferenceError as exc:
            raise ModelNotFoundError(
                f"No valid model available for local inference ({exc}). "
                "Please ensure local models are installed."
            ) from exc
        return default

    # execution

    async def ask_local(
        self,
        query: str,
        model: Optional[str] = None,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> InferenceResult:
        ready = await self.supervisor.ensure_running()
        if not ready:
            logger.warning("Local engine not ready; still trying to resolve a model")
        # an unreachable engine surfaces here as "no valid model" unless a model was named
        target = await self.resolve_local_model(model)
        if not ready:
            raise EngineUnavailableError(
                f"Local inference engine is not reachable at {self.supervisor.engine_url} and could not be started"
            )
        logger.info("Using local model %s", target)
        response = await self.engine_client.chat(target, build_messages(query, history))
        self.store.save_last_used_local_model(target)
        return InferenceResult(response=response, source="local", model=target)

    async def ask_remote(
        self,
        query: str,
        model: Optional[str] = None,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> InferenceResult:
        if self._remote is None:
            raise AuthError(
                "Remote inference is not configured. Set remoteConfig.apiKey to use remote mode.",
                field="remoteConfig.apiKey",
            )
        remote_config = self._config.remote_config
        target = model or (remote_config.default_model if remote_config else None) or self.settings.remote.default_model
        logger.info("Attempting remote inference with model %s", target)
        try:
            response = await self._remote.ask(query, target, retries=self.settings.remote.max_retries, history=history)
            return InferenceResult(response=response, source="remote", model=target)
        except InferenceError as exc:
            logger.error("Remote inference failed: %s", exc)
            if not should_fallback_to_local(exc):
                raise
            remote_error = exc
        logger.info("Falling back to local inference after remote failure")
        try:
            local = await self.ask_local(query, None, history)
        except InferenceError as local_exc:
            logger.error("Local fallback also failed: %s", local_exc)
            raise FallbackFailedError(remote_error, local_exc) from local_exc
        return local.model_copy(update={"response": annotate_fallback(local.response), "fallback": True})

    async def ask(
        self,
        query: str,
        model: Optional[str] = None,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> InferenceResult:
        return await self.ask_with_source(query, self.get_mode(), model, history)

    async def ask_with_source(
        self,
        query: str,
        source: str,
        model: Optional[str] = None,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> InferenceResult:
        if source == "remote":
            return await self.ask_remote(query, model, history)
        if source == "local":
            return await self.ask_local(query, model, history)
        raise BadRequestError(f"Unknown inference source: {source}", field="source")

    # listings

    async def get_remote_models(self) -> List[ModelDescriptor]:
        if self._remote is None:
            return []
        try:
            return await self._remote.list_models()
        except InferenceError as exc:
            logger.error("Failed to fetch remote models: %s", exc)
            return []

    async def get_available_models(self) -> List[InferenceModel]:
        models: List[InferenceModel] = []
        try:
            for m in await self.catalog.list_local_models():
                models.append(
                    InferenceModel(
                        id=m.name,
                        name=m.name,
                        source="local",
                        size_bytes=m.size_bytes or None,
                        description=f"Local model ({m.parameter_size})" if m.parameter_size else "Local model",
                    )
                )
        except InferenceError as exc:
            logger.warning("Failed to list local models: %s", exc)
        for m in await self.get_remote_models():
            models.append(InferenceModel(id=m.name, name=m.name, source="remote", description=m.description))
        return models
