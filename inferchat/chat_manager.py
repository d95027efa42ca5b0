import asyncio
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from .config import AppSettings
from .engine import EngineSupervisor
from .errors import EngineUnavailableError, NotFoundError
from .local_engine import LocalEngineClient
from .router import InferenceRouter
from .schemas import ChatMessage, ChatSession, ChatStats, InferenceMode
from .store import Store


logger = logging.getLogger("uvicorn.error")

MIGRATED_TITLE = "Migrated Chat"
_MIGRATION_STEP = timedelta(minutes=1)
_MIGRATION_ANSWER_OFFSET = timedelta(seconds=30)
_MIN_STEP = timedelta(microseconds=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WarmModelTracker:
    """Models warmed recently, each with a monotonic expiry; claims are de-duplicated."""

    def __init__(self, window_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_s = window_s
        self._clock = clock
        self._expiry: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        expired = [model for model, expires_at in self._expiry.items() if expires_at <= now]
        for model in expired:
            self._expiry.pop(model, None)
            logger.debug("Model %s removed from warm set", model)

    def claim(self, model: str) -> bool:
        """Mark the model warm; False when it is already warm and needs no new warm-up."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if model in self._expiry:
                return False
            self._expiry[model] = now + self.window_s
            return True

    def evict(self, model: str) -> None:
        with self._lock:
            self._expiry.pop(model, None)

    def is_warm(self, model: str) -> bool:
        with self._lock:
            self._prune(self._clock())
            return model in self._expiry


def default_title(mode: str, model: str, when: datetime) -> str:
    label = "Local" if mode == "local" else "Remote"
    local_time = when.astimezone()
    hour = local_time.hour % 12 or 12
    stamp = f"{local_time:%b} {local_time.day}, {hour}:{local_time:%M} {local_time:%p}"
    return f"{label} · {model} · {stamp}"


class ChatSessionManager:
    def __init__(
        self,
        settings: AppSettings,
        store: Store,
        router: InferenceRouter,
        supervisor: EngineSupervisor,
        engine_client: LocalEngineClient,
        *,
        tracker: Optional[WarmModelTracker] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.store = store
        self.router = router
        self.supervisor = supervisor
        self.engine_client = engine_client
        self.tracker = tracker or WarmModelTracker(settings.warmup_window_s)
        self._clock = clock
        self._warm_tasks: Set[asyncio.Task] = set()

    # warm-up

    async def _warm(self, model: str) -> None:
        if not await self.supervisor.ensure_running():
            raise EngineUnavailableError("Local engine unavailable for warm-up")
        await self.engine_client.warm_up(model)
        logger.info("Model %s warmed up", model)

    async def _run_warm_up(self, model: str) -> None:
        try:
            await asyncio.wait_for(self._warm(model), timeout=self.settings.warmup_timeout_s)
        except (Exception, asyncio.CancelledError):
            self.tracker.evict(model)
            raise

    def _on_warm_done(self, task: asyncio.Task) -> None:
        self._warm_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Failed to warm up model: %s", exc)

    def schedule_warm_up(self, model: str) -> Optional[asyncio.Task]:
        if not self.tracker.claim(model):
            logger.debug("Model %s already warm, skipping warm-up", model)
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.tracker.evict(model)
            logger.debug("No running event loop; warm-up for %s skipped", model)
            return None
        task = loop.create_task(self._run_warm_up(model))
        self._warm_tasks.add(task)
        task.add_done_callback(self._on_warm_done)
        return task

    async def close(self) -> None:
        tasks = list(self._warm_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # sessions

    def create_chat(self, mode: InferenceMode, model: str, title: Optional[str] = None) -> ChatSession:
        now = self._clock()
        chat = ChatSession(
            id=self.store.generate_chat_id(),
            title=title or default_title(mode, model, now),
            mode=mode,
            model=model,
            messages=[],
            created_at=now,
            updated_at=now,
        )
        self.store.save_chat(chat)
        self.store.set_current_chat_id(chat.id)
        if mode == "local":
            self.schedule_warm_up(model)
        logger.info("Created new %s chat with model %s: %s", mode, model, chat.id)
        return chat

    def get_chats(self) -> List[ChatSession]:
        return self.store.get_all_chats()

    def get_chat(self, chat_id: str) -> Optional[ChatSession]:
        return self.store.get_chat(chat_id)

    def get_current_chat(self) -> Optional[ChatSession]:
        chat_id = self.store.get_current_chat_id()
        return self.store.get_chat(chat_id) if chat_id else None

    def switch_to_chat(self, chat_id: str) -> bool:
        chat = self.store.get_chat(chat_id)
        if chat is None:
            return False
        self.store.set_current_chat_id(chat_id)
        logger.info("Switched to chat %s (%s - %s)", chat_id, chat.mode, chat.model)
        if chat.mode == "local":
            self.schedule_warm_up(chat.model)
        return True

    def delete_chat(self, chat_id: str) -> bool:
        if self.store.get_chat(chat_id) is None:
            return False
        self.store.delete_chat(chat_id)
        logger.info("Deleted chat %s", chat_id)
        return True

    def update_chat_title(self, chat_id: str, title: str) -> bool:
        chat = self.store.get_chat(chat_id)
        if chat is None:
            return False
        chat.title = title
        chat.updated_at = max(self._clock(), chat.updated_at + _MIN_STEP)
        self.store.save_chat(chat)
        return True

    def add_message(self, chat_id: str, role: str, content: str) -> Optional[ChatMessage]:
        chat = self.store.get_chat(chat_id)
        if chat is None:
            logger.error("Chat not found: %s", chat_id)
            return None
        now = self._clock()
        if chat.messages and now <= chat.messages[-1].timestamp:
            now = chat.messages[-1].timestamp + _MIN_STEP
        message = ChatMessage(id=self.store.generate_message_id(), role=role, content=content, timestamp=now)
        chat.messages.append(message)
        chat.updated_at = max(now, chat.updated_at + _MIN_STEP)
        self.store.save_chat(chat)
        logger.info("Added %s message to chat %s", role, chat_id)
        return message

    async def send_message(self, chat_id: str, text: str) -> str:
        chat = self.store.get_chat(chat_id)
        if chat is None:
            raise NotFoundError(f"Chat not found: {chat_id}")
        history = [{"role": m.role, "content": m.content} for m in chat.messages if m.role != "system"]
        await asyncio.to_thread(self.add_message, chat_id, "user", text)
        try:
            result = await self.router.ask_with_source(text, chat.mode, chat.model, history)
        except Exception:
            logger.exception("Failed to get response for chat %s", chat_id)
            raise
        await asyncio.to_thread(self.add_message, chat_id, "assistant", result.response)
        return result.response

    def get_chat_stats(self, chat_id: str) -> Optional[ChatStats]:
        chat = self.store.get_chat(chat_id)
        if chat is None:
            return None
        return ChatStats(message_count=len(chat.messages), last_activity=chat.updated_at)

    def migrate_existing_chat(self, old_messages: List[Dict[str, Any]], mode: InferenceMode, model: str) -> ChatSession:
        """Convert a legacy question/answer thread into a session and make it current."""
        logger.info("Migrating existing chat to session format")
        now = self._clock()
        total = len(old_messages)
        messages: List[ChatMessage] = []
        for index, entry in enumerate(old_messages):
            if not isinstance(entry, dict):
                continue
            base = now - _MIGRATION_STEP * (total - index)
            if entry.get("question"):
                messages.append(
                    ChatMessage(
                        id=self.store.generate_message_id(),
                        role="user",
                        content=str(entry["question"]),
                        timestamp=base,
                    )
                )
            if entry.get("answer"):
                messages.append(
                    ChatMessage(
                        id=self.store.generate_message_id(),
                        role="assistant",
                        content=str(entry["answer"]),
                        timestamp=base + _MIGRATION_ANSWER_OFFSET,
                    )
                )
        chat = ChatSession(
            id=self.store.generate_chat_id(),
            title=MIGRATED_TITLE,
            mode=mode,
            model=model,
            messages=messages,
            created_at=now - _MIGRATION_STEP * total,
            updated_at=now,
        )
        self.store.save_chat(chat)
        self.store.set_current_chat_id(chat.id)
        logger.info("Migrated chat with %d messages", len(messages))
        return chat
