from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


InferenceMode = Literal["local", "remote"]
MessageRole = Literal["user", "assistant", "system"]


class WireModel(BaseModel):
    """Base for payloads that travel to the UI or the store: camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ModelDescriptor(WireModel):
    name: str
    size_bytes: int = 0
    tags: List[str] = Field(default_factory=list)
    digest: str = ""
    is_installed: bool = False
    source_url: str = Field(default="", alias="sourceURL")
    description: str = ""
    modified_at: Optional[str] = None
    parameter_size: Optional[str] = None


class RemoteApiConfig(WireModel):
    api_key: str = ""
    base_url: Optional[str] = None
    default_model: Optional[str] = None


class InferenceConfig(WireModel):
    mode: InferenceMode = "local"
    remote_config: Optional[RemoteApiConfig] = None


class ChatMessage(WireModel):
    id: str
    role: MessageRole
    content: str
    timestamp: datetime


class ChatSession(WireModel):
    id: str
    title: str
    mode: InferenceMode
    model: str
    messages: List[ChatMessage] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class ChatStats(WireModel):
    message_count: int
    last_activity: datetime


class InferenceResult(WireModel):
    response: str
    source: InferenceMode
    model: str
    fallback: bool = False


class InferenceModel(WireModel):
    id: str
    name: str
    source: InferenceMode
    size_bytes: Optional[int] = None
    description: str = ""


class CompletionResult(WireModel):
    content: str
    model: str
    finish_reason: Optional[str] = None
    usage: Dict[str, Any] = Field(default_factory=dict)


class DiskSpaceCheck(WireModel):
    has_enough_space: bool
    free_bytes: int
    required_bytes: int
    error: Optional[str] = None


class DiskSpaceInfo(WireModel):
    free_bytes: int
    total_bytes: int
    used_bytes: int
    error: Optional[str] = None


class CacheStatus(WireModel):
    enabled: bool
    has_cache: bool
    age: Optional[float] = None
    is_expired: bool = True
    cache_duration: int = 0


class AskRequest(WireModel):
    query: str
    model: Optional[str] = None
    force_source: Optional[InferenceMode] = None


class CreateChatRequest(WireModel):
    mode: InferenceMode
    model: str
    title: Optional[str] = None


class SendMessageRequest(WireModel):
    content: str


class MigrateChatRequest(WireModel):
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    mode: InferenceMode
    model: str


class ModelNameRequest(WireModel):
    model: str


class ModelsPathRequest(WireModel):
    path: str


class ModeRequest(WireModel):
    mode: InferenceMode


class UpdateTitleRequest(WireModel):
    title: str
