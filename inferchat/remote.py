import asyncio
import json
import logging
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

import httpx

from .config import RemoteConfig
from .errors import ParseError, TransientBackendError, error_from_status
from .schemas import CompletionResult, ModelDescriptor


logger = logging.getLogger("uvicorn.error")

Sleep = Callable[[float], Awaitable[None]]


def _error_detail(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error)
        if error:
            return str(error)
        if payload.get("detail"):
            return str(payload["detail"])
    return json.dumps(payload, ensure_ascii=True)[:500]


class RemoteInferenceClient:
    """Client for a hosted OpenAI-compatible chat completions API."""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        *,
        config: Optional[RemoteConfig] = None,
        sleep: Sleep = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config or RemoteConfig()
        self.api_key = api_key
        self.base_url = (base_url or self.config.base_url).rstrip("/")
        self._sleep = sleep
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.config.timeout_s,
            transport=transport,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientBackendError(f"Remote API request timeout: {exc}", kind="timeout") from exc
        except httpx.RequestError as exc:
            raise TransientBackendError(f"Remote API network error: {exc}", kind="network") from exc
        logger.info("Remote API response: %s %s %s", resp.status_code, method, path)
        if resp.status_code >= 400:
            raise error_from_status(resp.status_code, _error_detail(resp))
        try:
            return resp.json()
        except ValueError as exc:
            raise ParseError(f"Remote API returned invalid JSON for {path}") from exc

    async def list_models(self) -> List[ModelDescriptor]:
        payload = await self._request("GET", "/models")
        items = payload.get("data") if isinstance(payload, dict) else payload
        models: List[ModelDescriptor] = []
        for item in items or []:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            owner = item.get("owned_by")
            models.append(
                ModelDescriptor(
                    name=str(item["id"]),
                    description=f"Hosted model ({owner})" if owner else "Hosted model",
                )
            )
        return models

    async def chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> CompletionResult:
        payload = {
            "model": model,
            "messages": messages,
            "temperature": self.config.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.config.max_tokens,
        }
        data = await self._request("POST", "/chat/completions", json=payload)
        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise ParseError("Remote API response carried no choices")
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        return CompletionResult(
            content=content if isinstance(content, str) else "",
            model=str(data.get("model") or model),
            finish_reason=choices[0].get("finish_reason"),
            usage=data.get("usage") if isinstance(data.get("usage"), dict) else {},
        )

    async def chat_stream(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncGenerator[str, None]:
        payload = {
            "model": model,
            "messages": messages,
            "temperature": self.config.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.config.max_tokens,
            "stream": True,
        }
        try:
            async with self.client.stream("POST", "/chat/completions", json=payload) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise error_from_status(resp.status_code, _error_detail(resp))
                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    chunk = line[len("data:"):].strip()
                    if chunk == "[DONE]":
                        break
                    try:
                        data = json.loads(chunk)
                    except ValueError:
                        continue
                    delta = (data.get("choices") or [{}])[0].get("delta") or {}
                    content = delta.get("content")
                    if content:
                        yield content
        except httpx.TimeoutException as exc:
            raise TransientBackendError(f"Remote API stream timeout: {exc}", kind="timeout") from exc
        except httpx.RequestError as exc:
            raise TransientBackendError(f"Remote API network error: {exc}", kind="network") from exc

    async def test_connection(self) -> bool:
        try:
            resp = await self.client.get("/models")
        except httpx.HTTPError as exc:
            logger.error("Remote API connection test failed: %s", exc)
            return False
        return resp.status_code == 200

    async def ask(
        self,
        query: str,
        model: Optional[str] = None,
        retries: Optional[int] = None,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> str:
        """Single question against the hosted API, retrying transient failures with backoff."""
        target = model or self.config.default_model
        messages = [
            {"role": m["role"], "content": m["content"]}
            for m in history or []
            if m.get("role") in ("user", "assistant") and m.get("content")
        ]
        messages.append({"role": "user", "content": query})
        attempts = max(0, self.config.max_retries if retries is None else retries) + 1
        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                result = await self.chat(target, messages)
                if result.content.strip():
                    return result.content
                last_error = TransientBackendError("Remote API returned no generated content", kind="empty")
            except (TransientBackendError, ParseError) as exc:
                last_error = exc
            if attempt < attempts - 1:
                delay = min(self.config.backoff_base_s * (2 ** attempt), self.config.backoff_max_s)
                logger.warning(
                    "Remote ask attempt %d/%d failed (%s); retrying in %.1fs",
                    attempt + 1,
                    attempts,
                    last_error,
                    delay,
                )
                await self._sleep(delay)
        raise last_error

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
