from collections import namedtuple

import httpx
import pytest
import respx
from httpx import Response

from inferchat import catalog as catalog_module
from inferchat.catalog import (
    CURATED_MODELS,
    GIB,
    ModelCatalog,
    decode_registry_record,
    estimate_model_size,
    extract_parameter_size,
    generate_tags,
)
from inferchat.config import CatalogConfig
from inferchat.errors import DiskSpaceError
from inferchat.registry_cache import RegistryCacheStore
from tests.conftest import PRIMARY_URL, SECONDARY_URL
from tests.fakes import FakeEngineClient


DiskUsage = namedtuple("DiskUsage", "total used free percent")


def _records(count: int, prefix: str = "model"):
    return [{"model_name": f"{prefix}-{i}", "description": "general chat model"} for i in range(count)]


class Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _catalog(tmp_path, engine=None, cache_enabled=False, clock=None, min_results=10) -> ModelCatalog:
    config = CatalogConfig(
        primary_url=PRIMARY_URL,
        secondary_url=SECONDARY_URL,
        cache_enabled=cache_enabled,
        cache_ttl_s=3600,
        min_results=min_results,
    )
    return ModelCatalog(
        config,
        engine or FakeEngineClient(),
        str(tmp_path),
        cache_store=RegistryCacheStore(str(tmp_path / "cache.db")),
        clock=clock or Clock(),
    )


def test_size_estimates_share_the_seven_b_class():
    seven_b = estimate_model_size("llama-7b-chat")
    assert seven_b == int(4.1 * GIB)
    assert estimate_model_size("something-unrecognised") == seven_b
    assert estimate_model_size("llama3.1:8b") == seven_b


def test_size_estimate_buckets_and_family_overrides():
    assert estimate_model_size("llama2:13b") == int(8.5 * GIB)
    assert estimate_model_size("qwen2.5:72b") == int(40 * GIB)
    assert estimate_model_size("llama3.2:3b") == int(2.0 * GIB)
    assert estimate_model_size("qwen2.5-coder:1.5b") == int(1.1 * GIB)
    assert estimate_model_size("orca-mini:13b") == int(1.9 * GIB)
    assert estimate_model_size("phi3:mini") == int(2.2 * GIB)
    assert estimate_model_size("phi4") == int(9.1 * GIB)


def test_parameter_size_extraction():
    assert extract_parameter_size("llama2:13b") == "13B"
    assert extract_parameter_size("qwen2.5-coder:1.5b") == "1.5B"
    assert extract_parameter_size("phi3") == "3.8B"
    assert extract_parameter_size("mixtral") is None


def test_generate_tags_from_name_description_and_url():
    tags = generate_tags("codellama:7b", "Code generation and chat", "https://ollama.com/library/codellama")
    assert tags[:3] == ["llama", "code", "7b"]
    assert "programming" in tags
    assert "chat" in tags
    assert tags[-2:] == ["ai", "llm"]
    assert len(tags) == len(set(tags))


def test_tolerant_decoding_skips_nameless_records():
    assert decode_registry_record({"description": "no name"}) is None
    assert decode_registry_record("not a dict") is None
    record = decode_registry_record({"model_identifier": "llava:13b", "size": 0, "url": "https://x/vision"})
    assert record.name == "llava:13b"
    assert record.size_bytes == int(8.5 * GIB)
    assert "vision" in record.tags
    assert record.source_url == "https://x/vision"
    sized = decode_registry_record({"name": "tiny", "size": 1234})
    assert sized.size_bytes == 1234


@pytest.mark.asyncio
async def test_primary_source_with_enough_results(tmp_path):
    catalog = _catalog(tmp_path)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(PRIMARY_URL).mock(return_value=Response(200, json={"models": _records(12)}))
            models = await catalog.list_remote_catalog()
    finally:
        await catalog.close()
    assert len(models) == 12
    assert all(m.is_installed is False for m in models)


@pytest.mark.asyncio
async def test_secondary_source_used_when_primary_fails(tmp_path):
    catalog = _catalog(tmp_path, min_results=1)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(PRIMARY_URL).mock(return_value=Response(503))
            respx_mock.get(SECONDARY_URL).mock(
                return_value=Response(200, json={"models": [{"name": "gemma3:4b", "size": 3338801804}]})
            )
            models = await catalog.list_remote_catalog()
    finally:
        await catalog.close()
    assert [m.name for m in models] == ["gemma3:4b"]
    assert models[0].size_bytes == 3338801804


@pytest.mark.asyncio
async def test_curated_list_when_all_sources_fail(tmp_path):
    catalog = _catalog(tmp_path)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(PRIMARY_URL).mock(side_effect=httpx.ConnectError("offline"))
            respx_mock.get(SECONDARY_URL).mock(side_effect=httpx.ConnectError("offline"))
            models = await catalog.list_remote_catalog()
    finally:
        await catalog.close()
    assert [m.name for m in models] == [m.name for m in CURATED_MODELS]


@pytest.mark.asyncio
async def test_small_result_is_supplemented_and_reconciled(tmp_path):
    engine = FakeEngineClient(installed=["mistral", "model-0"])
    catalog = _catalog(tmp_path, engine=engine)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(PRIMARY_URL).mock(
                return_value=Response(200, json={"models": _records(2) + [{"model_name": "llama2"}]})
            )
            models = await catalog.list_remote_catalog()
    finally:
        await catalog.close()
    names = [m.name for m in models]
    assert names[:3] == ["model-0", "model-1", "llama2"]
    assert names.count("llama2") == 1
    assert "orca-mini" in names
    installed = {m.name for m in models if m.is_installed}
    assert installed == {"mistral", "model-0"}


@pytest.mark.asyncio
async def test_reconcile_failure_leaves_everything_uninstalled(tmp_path):
    engine = FakeEngineClient(installed=["model-0"])
    engine.reachable = False
    catalog = _catalog(tmp_path, engine=engine)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(PRIMARY_URL).mock(return_value=Response(200, json={"models": _records(10)}))
            models = await catalog.list_remote_catalog()
    finally:
        await catalog.close()
    assert all(m.is_installed is False for m in models)


@pytest.mark.asyncio
async def test_cache_serves_fresh_data_and_survives_restart(tmp_path):
    clock = Clock()
    catalog = _catalog(tmp_path, cache_enabled=True, clock=clock)
    await catalog.init()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.get(PRIMARY_URL).mock(return_value=Response(200, json={"models": _records(10)}))
            await catalog.list_remote_catalog()
            await catalog.list_remote_catalog()
            assert route.call_count == 1
            await catalog.list_remote_catalog(force_refresh=True)
            assert route.call_count == 2
    finally:
        await catalog.close()

    clock.now += 60
    restarted = _catalog(tmp_path, cache_enabled=True, clock=clock)
    try:
        status = await restarted.cache_status()
        assert status.has_cache is True
        assert status.age == 60
        assert status.is_expired is False
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.get(PRIMARY_URL).mock(return_value=Response(500))
            models = await restarted.list_remote_catalog()
            assert route.call_count == 0
        assert len(models) == 10
    finally:
        await restarted.close()


@pytest.mark.asyncio
async def test_stale_cache_served_when_fetch_fails(tmp_path):
    clock = Clock()
    catalog = _catalog(tmp_path, cache_enabled=True, clock=clock)
    await catalog.init()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.get(PRIMARY_URL).mock(return_value=Response(200, json={"models": _records(11)}))
            await catalog.list_remote_catalog()
            clock.now += 7200
            route.mock(return_value=Response(500))
            respx_mock.get(SECONDARY_URL).mock(return_value=Response(500))
            models = await catalog.list_remote_catalog()
        assert len(models) == 11
        assert (await catalog.cache_status()).is_expired is True
    finally:
        await catalog.close()


@pytest.mark.asyncio
async def test_clear_cache_is_idempotent(tmp_path):
    catalog = _catalog(tmp_path, cache_enabled=True)
    await catalog.init()
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(PRIMARY_URL).mock(return_value=Response(200, json={"models": _records(10)}))
            await catalog.list_remote_catalog()
        assert (await catalog.cache_status()).has_cache is True
        assert await catalog.clear_cache() is True
        assert (await catalog.cache_status()).has_cache is False
        assert await catalog.clear_cache() is True
        status = await catalog.cache_status()
        assert status.has_cache is False
        assert status.age is None
    finally:
        await catalog.close()


def test_disk_check_against_ten_gib_free(tmp_path, monkeypatch):
    monkeypatch.setattr(
        catalog_module.psutil,
        "disk_usage",
        lambda path: DiskUsage(total=100 * GIB, used=90 * GIB, free=10 * GIB, percent=90.0),
    )
    catalog = _catalog(tmp_path)
    small = catalog.check_disk_space(4 * GIB)
    large = catalog.check_disk_space(20 * GIB)
    assert small.has_enough_space is True
    assert large.has_enough_space is False
    assert large.free_bytes == 10 * GIB
    assert large.required_bytes == 20 * GIB
    info = catalog.get_disk_space_info()
    assert info.used_bytes == 90 * GIB
    assert info.total_bytes == 100 * GIB


def test_disk_errors_are_embedded(tmp_path, monkeypatch):
    def boom(path):
        raise OSError("device gone")

    monkeypatch.setattr(catalog_module.psutil, "disk_usage", boom)
    catalog = _catalog(tmp_path)
    check = catalog.check_disk_space(GIB)
    assert check.has_enough_space is False
    assert check.error == "device gone"
    info = catalog.get_disk_space_info()
    assert info.free_bytes == 0
    assert info.error == "device gone"


@pytest.mark.asyncio
async def test_get_or_pull_model_pulls_and_warms(tmp_path, monkeypatch):
    monkeypatch.setattr(
        catalog_module.psutil,
        "disk_usage",
        lambda path: DiskUsage(total=100 * GIB, used=50 * GIB, free=50 * GIB, percent=50.0),
    )
    engine = FakeEngineClient()
    statuses = []
    catalog = _catalog(tmp_path, engine=engine)
    catalog.on_status = statuses.append
    descriptor = await catalog.get_or_pull_model("demo:7b")
    await catalog.close()
    assert descriptor.name == "demo:7b"
    assert engine.pull_calls == ["demo:7b"]
    assert engine.warm_calls == ["demo:7b"]
    assert "Pulling model demo:7b" in statuses


@pytest.mark.asyncio
async def test_get_or_pull_model_refuses_without_disk_space(tmp_path, monkeypatch):
    monkeypatch.setattr(
        catalog_module.psutil,
        "disk_usage",
        lambda path: DiskUsage(total=10 * GIB, used=9 * GIB, free=1 * GIB, percent=90.0),
    )
    engine = FakeEngineClient()
    catalog = _catalog(tmp_path, engine=engine)
    with pytest.raises(DiskSpaceError):
        await catalog.get_or_pull_model("llama2:13b")
    await catalog.close()
    assert engine.pull_calls == []


@pytest.mark.asyncio
async def test_pull_and_replace_deletes_previous_model(tmp_path):
    engine = FakeEngineClient(installed=["old:3b"], loaded=["old:3b"])
    catalog = _catalog(tmp_path, engine=engine)
    assert (await catalog.get_current_model()).name == "old:3b"
    assert await catalog.pull_and_replace("new:7b") is True
    assert engine.delete_calls == ["old:3b"]
    assert engine.installed == ["new:7b"]
    assert (await catalog.get_current_model()).name == "new:7b"
    await catalog.close()


@pytest.mark.asyncio
async def test_pull_and_replace_reports_failure(tmp_path):
    engine = FakeEngineClient(installed=["old:3b"], loaded=["old:3b"], pullable=[])
    catalog = _catalog(tmp_path, engine=engine)
    assert await catalog.pull_and_replace("missing:1b") is False
    assert engine.installed == ["old:3b"]
    await catalog.close()


@pytest.mark.asyncio
async def test_delete_model_returns_bool(tmp_path):
    engine = FakeEngineClient(installed=["demo:7b"])
    catalog = _catalog(tmp_path, engine=engine)
    assert await catalog.delete_model("demo:7b") is True
    assert await catalog.delete_model("demo:7b") is False
    await catalog.close()


@pytest.mark.asyncio
async def test_current_model_none_when_engine_down(tmp_path):
    engine = FakeEngineClient(loaded=["demo:7b"])
    engine.reachable = False
    catalog = _catalog(tmp_path, engine=engine)
    assert await catalog.get_current_model() is None
    await catalog.close()
