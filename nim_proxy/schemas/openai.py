from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


# Minimal OpenAI chat-completions schema: only the fields the proxy reads are checked.


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    # Forwarded verbatim
    messages: List[Any] = Field(default_factory=list)
    temperature: Optional[float] = None
    max_tokens: Optional[Union[int, float]] = None
    stream: Optional[bool] = False


class ModelCard(BaseModel):
    id: str
    object: Literal["model"] = "model"
    created: int
    owned_by: str = "nvidia-nim-proxy"


class ModelList(BaseModel):
    object: Literal["list"] = "list"
    data: List[ModelCard]


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "NVIDIA NIM Proxy"
    models: List[str]


class ErrorBody(BaseModel):
    message: str
    type: str = "proxy_error"


class ErrorResponse(BaseModel):
    error: ErrorBody


def error_payload(message: str, type_: str = "proxy_error") -> Dict[str, Any]:
    return ErrorResponse(error=ErrorBody(message=message, type=type_)).model_dump()
