from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .catalog import ModelCatalog
from .chat_manager import ChatSessionManager
from .config import AppSettings, load_settings
from .engine import EngineSupervisor
from .errors import EngineUnavailableError, InferenceError, NotFoundError
from .local_engine import LocalEngineClient
from .registry_cache import RegistryCacheStore
from .router import InferenceRouter, RemoteFactory
from .schemas import (
    AskRequest,
    CreateChatRequest,
    InferenceConfig,
    MigrateChatRequest,
    ModelNameRequest,
    ModelsPathRequest,
    ModeRequest,
    SendMessageRequest,
    UpdateTitleRequest,
)
from .secrets import SecretVault
from .store import Store


router = APIRouter()


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_supervisor(request: Request) -> EngineSupervisor:
    return request.app.state.supervisor


def get_catalog(request: Request) -> ModelCatalog:
    return request.app.state.catalog


def get_inference_router(request: Request) -> InferenceRouter:
    return request.app.state.inference_router


def get_chat_manager(request: Request) -> ChatSessionManager:
    return request.app.state.chat_manager


async def inference_error_handler(request: Request, exc: InferenceError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# engine


@router.post("/api/engine/init")
async def engine_init(supervisor: EngineSupervisor = Depends(get_supervisor)):
    return {"ready": await supervisor.ensure_running()}


@router.post("/api/engine/stop")
async def engine_stop(supervisor: EngineSupervisor = Depends(get_supervisor)):
    await supervisor.stop()
    return {"ok": True}


@router.get("/api/engine/status")
async def engine_status(supervisor: EngineSupervisor = Depends(get_supervisor)):
    return supervisor.status()


# catalog and disk


@router.get("/api/catalog")
async def list_catalog(force_refresh: bool = False, catalog: ModelCatalog = Depends(get_catalog)):
    models = await catalog.list_remote_catalog(force_refresh=force_refresh)
    return {"models": [m.to_wire() for m in models]}


@router.post("/api/catalog/clear-cache")
async def clear_catalog_cache(catalog: ModelCatalog = Depends(get_catalog)):
    return {"ok": await catalog.clear_cache()}


@router.get("/api/catalog/status")
async def catalog_status(catalog: ModelCatalog = Depends(get_catalog)):
    status = await catalog.cache_status()
    return status.to_wire()


@router.get("/api/disk/check")
async def disk_check(size_bytes: int = Query(..., ge=0), catalog: ModelCatalog = Depends(get_catalog)):
    return catalog.check_disk_space(size_bytes).to_wire()


@router.get("/api/disk/info")
async def disk_info(catalog: ModelCatalog = Depends(get_catalog)):
    return catalog.get_disk_space_info().to_wire()


# installed models


@router.get("/api/models/local")
async def list_local_models(catalog: ModelCatalog = Depends(get_catalog)):
    models = await catalog.list_local_models()
    return {"models": [m.to_wire() for m in models]}


@router.get("/api/models/current")
async def current_model(catalog: ModelCatalog = Depends(get_catalog)):
    model = await catalog.get_current_model()
    return {"model": model.to_wire() if model else None}


@router.post("/api/models/pull")
async def pull_model(
    payload: ModelNameRequest,
    catalog: ModelCatalog = Depends(get_catalog),
    supervisor: EngineSupervisor = Depends(get_supervisor),
):
    if not await supervisor.ensure_running():
        raise EngineUnavailableError("Local engine is not running and could not be started")
    model = await catalog.get_or_pull_model(payload.model)
    return {"model": model.to_wire() if model else None}


@router.post("/api/models/pull-and-replace")
async def pull_and_replace(
    payload: ModelNameRequest,
    catalog: ModelCatalog = Depends(get_catalog),
    supervisor: EngineSupervisor = Depends(get_supervisor),
):
    if not await supervisor.ensure_running():
        return {"ok": False}
    return {"ok": await catalog.pull_and_replace(payload.model)}


@router.get("/api/models/last-used")
async def get_last_used(store: Store = Depends(get_store)):
    return {"model": store.get_last_used_local_model()}


@router.put("/api/models/last-used")
async def save_last_used(payload: ModelNameRequest, store: Store = Depends(get_store)):
    store.save_last_used_local_model(payload.model)
    return {"model": payload.model}


@router.delete("/api/models/{name:path}")
async def delete_model(name: str, catalog: ModelCatalog = Depends(get_catalog)):
    return {"ok": await catalog.delete_model(name)}


@router.get("/api/models-path")
async def get_models_path(store: Store = Depends(get_store), settings: AppSettings = Depends(get_settings)):
    return {"path": store.get_models_path() or settings.data_dir}


@router.put("/api/models-path")
async def set_models_path(payload: ModelsPathRequest, store: Store = Depends(get_store)):
    path = payload.path.strip()
    if not path:
        raise HTTPException(status_code=400, detail="path must not be empty")
    store.save_models_path(path)
    return {"path": path}


# inference configuration


@router.get("/api/inference/mode")
async def get_mode(inference: InferenceRouter = Depends(get_inference_router)):
    return {"mode": inference.get_mode()}


@router.put("/api/inference/mode")
async def set_mode(payload: ModeRequest, inference: InferenceRouter = Depends(get_inference_router)):
    inference.set_mode(payload.mode)
    return {"ok": True}


@router.get("/api/inference/config")
async def get_config(inference: InferenceRouter = Depends(get_inference_router)):
    return {**inference.safe_config(), "secretsEncrypted": inference.secrets_encrypted}


@router.put("/api/inference/config")
async def set_config(payload: InferenceConfig, inference: InferenceRouter = Depends(get_inference_router)):
    encrypted = await inference.set_config(payload)
    return {"ok": True, "secretsEncrypted": encrypted}


@router.post("/api/inference/test-connection")
async def test_connection(inference: InferenceRouter = Depends(get_inference_router)):
    return {"ok": await inference.test_connection()}


@router.get("/api/ai/models")
async def available_models(inference: InferenceRouter = Depends(get_inference_router)):
    models = await inference.get_available_models()
    return {"models": [m.to_wire() for m in models]}


@router.get("/api/remote/models")
async def remote_models(inference: InferenceRouter = Depends(get_inference_router)):
    models = await inference.get_remote_models()
    return {"models": [m.to_wire() for m in models]}


@router.post("/api/ai/ask")
async def ask(payload: AskRequest, inference: InferenceRouter = Depends(get_inference_router)):
    query = payload.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="query must not be empty")
    if payload.force_source:
        result = await inference.ask_with_source(query, payload.force_source, payload.model)
    else:
        result = await inference.ask(query, payload.model)
    return result.to_wire()


# chats


@router.post("/api/chats")
async def create_chat(payload: CreateChatRequest, chats: ChatSessionManager = Depends(get_chat_manager)):
    chat = chats.create_chat(payload.mode, payload.model, payload.title)
    return {"chat": chat.to_wire()}


@router.get("/api/chats")
async def list_chats(chats: ChatSessionManager = Depends(get_chat_manager)):
    return {"chats": [c.to_wire() for c in chats.get_chats()]}


@router.get("/api/chats/current")
async def current_chat(chats: ChatSessionManager = Depends(get_chat_manager)):
    chat = chats.get_current_chat()
    return {"chat": chat.to_wire() if chat else None}


@router.post("/api/chats/migrate")
async def migrate_chat(payload: MigrateChatRequest, chats: ChatSessionManager = Depends(get_chat_manager)):
    chat = chats.migrate_existing_chat(payload.messages, payload.mode, payload.model)
    return {"chat": chat.to_wire()}


@router.get("/api/chats/{chat_id}")
async def get_chat(chat_id: str, chats: ChatSessionManager = Depends(get_chat_manager)):
    chat = chats.get_chat(chat_id)
    if chat is None:
        raise NotFoundError(f"Chat not found: {chat_id}")
    return {"chat": chat.to_wire()}


@router.post("/api/chats/{chat_id}/switch")
async def switch_chat(chat_id: str, chats: ChatSessionManager = Depends(get_chat_manager)):
    return {"ok": chats.switch_to_chat(chat_id)}


@router.delete("/api/chats/{chat_id}")
async def delete_chat(chat_id: str, chats: ChatSessionManager = Depends(get_chat_manager)):
    return {"ok": chats.delete_chat(chat_id)}


@router.post("/api/chats/{chat_id}/messages")
async def send_message(
    chat_id: str,
    payload: SendMessageRequest,
    chats: ChatSessionManager = Depends(get_chat_manager),
):
    content = payload.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="content must not be empty")
    return {"response": await chats.send_message(chat_id, content)}


@router.patch("/api/chats/{chat_id}")
async def update_chat_title(
    chat_id: str,
    payload: UpdateTitleRequest,
    chats: ChatSessionManager = Depends(get_chat_manager),
):
    return {"ok": chats.update_chat_title(chat_id, payload.title)}


@router.get("/api/chats/{chat_id}/stats")
async def chat_stats(chat_id: str, chats: ChatSessionManager = Depends(get_chat_manager)):
    stats = chats.get_chat_stats(chat_id)
    if stats is None:
        raise NotFoundError(f"Chat not found: {chat_id}")
    return stats.to_wire()


def create_app(
    settings: AppSettings,
    *,
    store: Optional[Store] = None,
    vault: Optional[SecretVault] = None,
    engine_client: Optional[Any] = None,
    supervisor: Optional[Any] = None,
    catalog: Optional[ModelCatalog] = None,
    remote_factory: Optional[RemoteFactory] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Path(app.state.settings.data_dir).mkdir(parents=True, exist_ok=True)
        await app.state.catalog.init()
        await app.state.inference_router.init()
        try:
            yield
        finally:
            await app.state.chat_manager.close()
            await app.state.inference_router.close()
            await app.state.catalog.close()
            await app.state.supervisor.stop()
            await app.state.engine_client.close()

    app = FastAPI(title="inferchat", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store or Store(
        settings.store_path,
        vault or SecretVault(settings.secret_service_name),
        default_local_model=settings.default_local_model,
    )
    app.state.engine_client = engine_client or LocalEngineClient(
        settings.engine.base_url,
        timeout_s=settings.engine.request_timeout_s,
        probe_timeout_s=settings.engine.probe_timeout_s,
        keep_alive=settings.engine.keep_alive,
    )
    app.state.supervisor = supervisor or EngineSupervisor(
        settings.engine,
        app.state.engine_client,
        lambda: app.state.store.get_models_path() or settings.data_dir,
    )
    app.state.catalog = catalog or ModelCatalog(
        settings.catalog,
        app.state.engine_client,
        settings.data_dir,
        cache_store=RegistryCacheStore(str(settings.registry_cache_path)),
        on_status=app.state.supervisor.publish,
    )
    app.state.inference_router = InferenceRouter(
        settings,
        app.state.store,
        app.state.catalog,
        app.state.supervisor,
        app.state.engine_client,
        remote_factory=remote_factory,
    )
    app.state.chat_manager = ChatSessionManager(
        settings,
        app.state.store,
        app.state.inference_router,
        app.state.supervisor,
        app.state.engine_client,
    )

    app.add_exception_handler(InferenceError, inference_error_handler)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("INFERCHAT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "inferchat.main:app",
            host=getattr(settings, "host", "127.0.0.1"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
