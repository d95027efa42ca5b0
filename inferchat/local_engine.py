import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from .errors import (
    EngineUnavailableError,
    ModelNotFoundError,
    ParseError,
    TransientBackendError,
)
from .schemas import ModelDescriptor


logger = logging.getLogger("uvicorn.error")

ProgressCallback = Callable[[str], Union[None, Awaitable[None]]]


def _descriptor_from_engine(item: Dict[str, Any]) -> Optional[ModelDescriptor]:
    name = item.get("name") or item.get("model")
    if not name or not isinstance(name, str):
        return None
    details = item.get("details") if isinstance(item.get("details"), dict) else {}
    size = item.get("size")
    return ModelDescriptor(
        name=name,
        size_bytes=int(size) if isinstance(size, (int, float)) and size > 0 else 0,
        digest=str(item.get("digest") or ""),
        is_installed=True,
        modified_at=item.get("modified_at"),
        parameter_size=details.get("parameter_size"),
        tags=[t for t in (details.get("family"), details.get("quantization_level")) if t],
    )


def _format_progress(part: Dict[str, Any]) -> str:
    status = str(part.get("status") or "")
    total = part.get("total")
    completed = part.get("completed")
    if part.get("digest") and isinstance(total, (int, float)) and total > 0 and completed:
        percent = round((completed / total) * 100)
        return f"{status} {percent}%"
    return status


async def _emit(callback: Optional[ProgressCallback], line: str) -> None:
    if callback is None or not line:
        return
    result = callback(line)
    if result is not None:
        await result


class LocalEngineClient:
    """HTTP access to an Ollama-compatible engine listening on the loopback interface."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 300.0,
        probe_timeout_s: float = 2.0,
        keep_alive: str = "10m",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.probe_timeout_s = probe_timeout_s
        self.keep_alive = keep_alive
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout_s, transport=transport)

    async def probe(self) -> bool:
        try:
            resp = await self.client.get("/", timeout=self.probe_timeout_s)
            return resp.status_code == 200
        except httpx.HTTPError:
            return False

    def _raise_for_status(self, resp: httpx.Response, model: Optional[str] = None) -> None:
        if resp.status_code < 400:
            return
        detail = resp.text
        try:
            payload = resp.json()
            if isinstance(payload, dict) and payload.get("error"):
                detail = str(payload["error"])
        except ValueError:
            pass
        if resp.status_code == 404:
            raise ModelNotFoundError(
                f"Model {model or '(unknown)'} not found on local engine: {detail}",
                status_code=404,
            )
        raise TransientBackendError(
            f"Local engine error (HTTP {resp.status_code}): {detail}",
            status_code=resp.status_code,
            kind="http",
        )

    async def _request(self, method: str, path: str, *, model: Optional[str] = None, **kwargs: Any) -> Any:
        try:
            resp = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientBackendError(f"Local engine request timed out: {exc}", kind="timeout") from exc
        except httpx.RequestError as exc:
            raise EngineUnavailableError(f"Local engine unreachable at {self.base_url}: {exc}") from exc
        self._raise_for_status(resp, model=model)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise ParseError(f"Local engine returned invalid JSON for {path}") from exc

    async def list_models(self) -> List[ModelDescriptor]:
        data = await self._request("GET", "/api/tags")
        models = data.get("models") if isinstance(data, dict) else None
        return [d for d in (_descriptor_from_engine(m) for m in models or [] if isinstance(m, dict)) if d]

    async def list_loaded(self) -> List[ModelDescriptor]:
        data = await self._request("GET", "/api/ps")
        models = data.get("models") if isinstance(data, dict) else None
        return [d for d in (_descriptor_from_engine(m) for m in models or [] if isinstance(m, dict)) if d]

    async def chat(self, model: str, messages: List[Dict[str, str]]) -> str:
        payload = {"model": model, "messages": messages, "stream": False, "keep_alive": self.keep_alive}
        data = await self._request("POST", "/api/chat", model=model, json=payload)
        message = data.get("message") if isinstance(data, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise ParseError(f"Local engine reply for {model} carried no message content")
        return content

    async def pull(self, model: str, on_progress: Optional[ProgressCallback] = None) -> None:
        payload = {"model": model, "stream": True}
        try:
            async with self.client.stream("POST", "/api/pull", json=payload, timeout=None) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    self._raise_for_status(resp, model=model)
                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        part = json.loads(line)
                    except ValueError:
                        continue
                    if part.get("error"):
                        raise ModelNotFoundError(f"Pulling {model} failed: {part['error']}")
                    await _emit(on_progress, _format_progress(part))
        except httpx.TimeoutException as exc:
            raise TransientBackendError(f"Pulling {model} timed out: {exc}", kind="timeout") from exc
        except httpx.RequestError as exc:
            raise EngineUnavailableError(f"Local engine unreachable at {self.base_url}: {exc}") from exc
        logger.info("Pulled model %s", model)

    async def delete(self, model: str) -> None:
        await self._request("DELETE", "/api/delete", model=model, json={"model": model})

    async def warm_up(self, model: str) -> None:
        """Load the model into memory without generating anything."""
        await self._request("POST", "/api/generate", model=model, json={"model": model, "keep_alive": self.keep_alive})

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
