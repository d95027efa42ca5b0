import copy
import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .config import DEFAULT_LOCAL_MODEL
from .schemas import ChatSession, InferenceConfig, RemoteApiConfig
from .secrets import SecretVault


logger = logging.getLogger("uvicorn.error")

API_KEY_SECRET = "remote-api-key"
ENCRYPTED_FLAG = "_encrypted"


def _defaults(default_local_model: str) -> Dict[str, Any]:
    return {
        "modelsPath": "",
        "inferenceConfig": {"mode": "local"},
        "lastUsedLocalModel": default_local_model,
        "chats": {},
        "currentChatId": None,
    }


class Store:
    """Keyed JSON store for mode, credentials, model paths and chats.

    The file is read on first access and rewritten atomically on every mutation.
    """

    def __init__(
        self,
        path: Path,
        vault: Optional[SecretVault] = None,
        default_local_model: str = DEFAULT_LOCAL_MODEL,
    ) -> None:
        self.path = Path(path)
        self.vault = vault
        self.default_local_model = default_local_model
        self._data: Optional[Dict[str, Any]] = None
        self._lock = threading.RLock()

    def _load(self) -> Dict[str, Any]:
        if self._data is not None:
            return self._data
        data = _defaults(self.default_local_model)
        if self.path.exists():
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
                if isinstance(raw, dict):
                    data.update(raw)
                else:
                    logger.warning("Store %s is not a JSON object; using defaults", self.path)
            except (OSError, ValueError) as exc:
                logger.error("Failed to read store %s: %s", self.path, exc)
        self._data = data
        return data

    def _flush(self) -> None:
        data = self._load()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, ensure_ascii=True, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return copy.deepcopy(self._load().get(key, default))

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._load()[key] = value
            self._flush()

    def delete(self, key: str) -> None:
        with self._lock:
            self._load().pop(key, None)
            self._flush()

    def clear(self) -> None:
        with self._lock:
            self._data = _defaults(self.default_local_model)
            self._flush()

    # models path

    def get_models_path(self) -> str:
        return self.get("modelsPath") or ""

    def save_models_path(self, path: str) -> None:
        self.set("modelsPath", path)

    # inference config

    def get_inference_config(self) -> Tuple[InferenceConfig, bool]:
        """Return the stored config with the API key resolved, and whether it was encrypted."""
        raw = self.get("inferenceConfig") or {"mode": "local"}
        remote_raw = raw.get("remoteConfig")
        encrypted = False
        if isinstance(remote_raw, dict):
            encrypted = bool(remote_raw.pop(ENCRYPTED_FLAG, False))
            if encrypted:
                secret = self.vault.decrypt(API_KEY_SECRET) if self.vault else None
                if secret is None:
                    logger.warning("Encrypted API key could not be read back from the keyring")
                remote_raw["apiKey"] = secret or ""
        try:
            config = InferenceConfig.model_validate(raw)
        except ValueError as exc:
            logger.error("Stored inference config is invalid, using defaults: %s", exc)
            return InferenceConfig(), False
        return config, encrypted

    def save_inference_config(self, config: InferenceConfig) -> bool:
        payload = config.to_wire()
        encrypted = False
        remote: Optional[RemoteApiConfig] = config.remote_config
        if remote is not None:
            remote_payload = payload["remoteConfig"]
            if remote.api_key and self.vault is not None:
                encrypted = self.vault.encrypt(API_KEY_SECRET, remote.api_key)
            if encrypted:
                remote_payload["apiKey"] = ""
            elif self.vault is not None:
                self.vault.forget(API_KEY_SECRET)
            remote_payload[ENCRYPTED_FLAG] = encrypted
        else:
            payload.pop("remoteConfig", None)
        self.set("inferenceConfig", payload)
        return encrypted

    # local model

    def get_last_used_local_model(self) -> str:
        return self.get("lastUsedLocalModel") or self.default_local_model

    def save_last_used_local_model(self, model: str) -> None:
        self.set("lastUsedLocalModel", model)

    # chats

    def _chats(self) -> Dict[str, Any]:
        chats = self._load().get("chats")
        if not isinstance(chats, dict):
            chats = {}
            self._load()["chats"] = chats
        return chats

    def save_chat(self, chat: ChatSession) -> None:
        with self._lock:
            self._chats()[chat.id] = chat.to_wire()
            self._flush()

    def get_chat(self, chat_id: str) -> Optional[ChatSession]:
        with self._lock:
            raw = self._chats().get(chat_id)
            if raw is None:
                return None
            try:
                return ChatSession.model_validate(raw)
            except ValueError as exc:
                logger.error("Chat %s is unreadable: %s", chat_id, exc)
                return None

    def get_all_chats(self) -> List[ChatSession]:
        with self._lock:
            chats: List[ChatSession] = []
            for chat_id, raw in self._chats().items():
                try:
                    chats.append(ChatSession.model_validate(raw))
                except ValueError as exc:
                    logger.error("Skipping unreadable chat %s: %s", chat_id, exc)
        chats.sort(key=lambda c: c.updated_at, reverse=True)
        return chats

    def delete_chat(self, chat_id: str) -> bool:
        with self._lock:
            removed = self._chats().pop(chat_id, None) is not None
            if self._load().get("currentChatId") == chat_id:
                self._load()["currentChatId"] = None
            self._flush()
            return removed

    def get_current_chat_id(self) -> Optional[str]:
        return self.get("currentChatId")

    def set_current_chat_id(self, chat_id: Optional[str]) -> None:
        self.set("currentChatId", chat_id)

    @staticmethod
    def generate_chat_id() -> str:
        return f"chat_{uuid.uuid4().hex}"

    @staticmethod
    def generate_message_id() -> str:
        return f"msg_{uuid.uuid4().hex}"
