from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from inferchat.catalog import ModelCatalog
from inferchat.config import AppSettings, CatalogConfig, EngineConfig, RemoteConfig
from inferchat.main import create_app
from inferchat.router import InferenceRouter
from inferchat.schemas import InferenceConfig, RemoteApiConfig
from inferchat.secrets import SecretVault
from inferchat.store import Store
from tests.fakes import FakeEngineClient, FakeRemoteClient, FakeSupervisor, InMemoryKeyring


PRIMARY_URL = "https://registry.test/api/v1/models?limit=200"
SECONDARY_URL = "https://fallback.test/api/tags"
REMOTE_BASE_URL = "https://remote.test/api/v1"


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        data_dir=str(tmp_path / "data"),
        warmup_window_s=300,
        warmup_timeout_s=1.0,
        engine=EngineConfig(startup_timeout_s=1.0, poll_interval_s=0.01, stop_grace_s=0.5),
        catalog=CatalogConfig(primary_url=PRIMARY_URL, secondary_url=SECONDARY_URL, timeout_s=5),
        remote=RemoteConfig(base_url=REMOTE_BASE_URL, backoff_base_s=0.0, backoff_max_s=0.0),
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


def make_store(tmp_path: Path, keyring_backend=None) -> Store:
    vault = SecretVault("inferchat-test", backend=keyring_backend or InMemoryKeyring())
    return Store(tmp_path / "data" / "store.json", vault)


async def make_router(
    tmp_path: Path,
    *,
    engine: FakeEngineClient = None,
    supervisor: FakeSupervisor = None,
    remote: FakeRemoteClient = None,
    api_key: str = "",
    mode: str = "local",
):
    settings = make_settings(tmp_path)
    store = make_store(tmp_path)
    engine = engine or FakeEngineClient()
    supervisor = supervisor or FakeSupervisor(engine)
    remote = remote or FakeRemoteClient()
    if api_key or mode != "local":
        remote_config = RemoteApiConfig(api_key=api_key) if api_key else None
        store.save_inference_config(InferenceConfig(mode=mode, remote_config=remote_config))
    catalog = ModelCatalog(settings.catalog, engine, settings.data_dir)
    router = InferenceRouter(settings, store, catalog, supervisor, engine, remote_factory=remote.configure)
    await router.init()
    return router, store, engine, supervisor, remote


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_engine: FakeEngineClient | None = None,
        fake_supervisor: FakeSupervisor | None = None,
        fake_remote: FakeRemoteClient | None = None,
        keyring_backend=None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        engine = fake_engine or FakeEngineClient()
        supervisor = fake_supervisor or FakeSupervisor(engine)
        remote = fake_remote or FakeRemoteClient()
        vault = SecretVault(settings.secret_service_name, backend=keyring_backend or InMemoryKeyring())
        app = create_app(
            settings,
            vault=vault,
            engine_client=engine,
            supervisor=supervisor,
            remote_factory=remote.configure,
        )
        return app, engine, supervisor, remote

    return _factory


@pytest.fixture
async def client(app_factory):
    app, engine, supervisor, remote = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_engine = engine  # type: ignore[attr-defined]
            http_client.fake_supervisor = supervisor  # type: ignore[attr-defined]
            http_client.fake_remote = remote  # type: ignore[attr-defined]
            yield http_client
