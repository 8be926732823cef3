"""OpenAI-compatible chat completion client with named backend pooling."""

from __future__ import annotations

import dataclasses
import json
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from krill.config_types import LLMConfig, LLMPool

__all__ = [
    "FunctionCall",
    "ToolCall",
    "ToolDef",
    "Message",
    "Usage",
    "Request",
    "Response",
    "LLMError",
    "Backend",
    "Pool",
    "set_client_factory",
    "new_pool",
    "should_retry_without_tools",
]

DEFAULT_MAX_TOKENS = 4096
REQUEST_TIMEOUT_SECONDS = 120.0
_NO_TOOLS_HINT = (
    "\n\nTool calling is unavailable for this request. Respond directly without calling tools."
)


@dataclass
class FunctionCall:
    name: str = ""
    arguments: str = ""  # JSON text


@dataclass
class ToolCall:
    """A function invocation requested by the model."""

    id: str = ""
    type: str = "function"
    function: FunctionCall = field(default_factory=FunctionCall)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.function.name, "arguments": self.function.arguments},
        }

    @classmethod
    def from_dict(cls, data: Any) -> ToolCall:
        if not isinstance(data, dict):
            raise LLMError(f"llm parse: tool call must be an object, got {type(data).__name__}")
        fn = data.get("function") or {}
        if not isinstance(fn, dict):
            raise LLMError("llm parse: tool call function must be an object")
        return cls(
            id=_text(data.get("id")),
            type=_text(data.get("type")),
            function=FunctionCall(name=_text(fn.get("name")), arguments=_text(fn.get("arguments"))),
        )


@dataclass
class ToolDef:
    """A function definition offered to the model."""

    name: str = ""
    description: str = ""
    parameters: Any = None  # JSON Schema, as a mapping or JSON text
    type: str = "function"

    def to_dict(self) -> dict[str, Any]:
        params = self.parameters
        if isinstance(params, (str, bytes)):
            params = json.loads(params) if params else None
        return {
            "type": self.type,
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": params,
            },
        }


@dataclass
class Message:
    """One turn in a conversation."""

    role: str = ""
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str = ""


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class Request:
    model_name: str = ""
    system_prompt: str = ""
    messages: list[Message] = field(default_factory=list)
    tools: list[ToolDef] = field(default_factory=list)  # empty: no tool calling
    max_tokens: int = 0


@dataclass
class Response:
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    message: Message = field(default_factory=Message)
    usage: Usage = field(default_factory=Usage)


class LLMError(Exception):
    """A completion request failed; carries the HTTP status and body if any."""

    def __init__(self, message: str, status_code: int = 0, body: bytes = b"") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _default_client() -> httpx.Client:
    return httpx.Client(timeout=REQUEST_TIMEOUT_SECONDS)


_factory_lock = threading.Lock()
_client_factory: Callable[[], httpx.Client] = _default_client


def set_client_factory(factory: Callable[[], httpx.Client] | None) -> Callable[[], None]:
    """Replace how backends build their HTTP client; returns a restore function."""
    global _client_factory
    with _factory_lock:
        previous = _client_factory
        _client_factory = factory or _default_client

    def restore() -> None:
        global _client_factory
        with _factory_lock:
            _client_factory = previous

    return restore


def _new_client() -> httpx.Client:
    with _factory_lock:
        factory = _client_factory
    return factory()


def should_retry_without_tools(status_code: int, body: bytes | str, request: Request) -> bool:
    """Whether a 400 response reports a failed tool call worth retrying without tools."""
    if status_code != 400 or not request.tools:
        return False
    text = body.decode("utf-8", "replace") if isinstance(body, bytes) else body
    text = text.lower()
    return "tool_use_failed" in text or "failed to call a function" in text


class Backend:
    """One configured chat completion endpoint."""

    def __init__(self, cfg: LLMConfig, client: httpx.Client | None = None) -> None:
        self.cfg = cfg
        self._client = client if client is not None else _new_client()

    def complete(self, request: Request) -> Response:
        """Send a chat completion request and parse the first choice.

        When the provider rejects a tool call, the request is sent once more
        without tools. Raises LLMError on failure.
        """
        try:
            return self._complete_once(request)
        except LLMError as err:
            if not should_retry_without_tools(err.status_code, err.body, request):
                raise
        retry = dataclasses.replace(
            request,
            tools=[],
            system_prompt=(request.system_prompt + _NO_TOOLS_HINT).strip(),
        )
        return self._complete_once(retry)

    def _payload(self, request: Request) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        for msg in request.messages:
            entry: dict[str, Any] = {"role": msg.role, "content": msg.content}
            if msg.tool_calls:
                entry["tool_calls"] = [tc.to_dict() for tc in msg.tool_calls]
                entry["content"] = None
            if msg.tool_call_id:
                entry["tool_call_id"] = msg.tool_call_id
            messages.append(entry)
        max_tokens = request.max_tokens or self.cfg.max_tokens or DEFAULT_MAX_TOKENS
        payload: dict[str, Any] = {
            "model": self.cfg.model,
            "messages": messages,
            "max_tokens": max_tokens,
        }
        if request.tools:
            payload["tools"] = [tool.to_dict() for tool in request.tools]
        return payload

    def _complete_once(self, request: Request) -> Response:
        url = self.cfg.base_url.rstrip("/") + "/v1/chat/completions"
        headers = {
            "Content-Type": "application/json",
            "Authorization": "Bearer " + self.cfg.api_key,
        }
        try:
            resp = self._client.post(url, content=json.dumps(self._payload(request)), headers=headers)
        except httpx.HTTPError as exc:
            raise LLMError(f"llm http: {exc}") from exc
        body = resp.content
        status = resp.status_code
        if status >= 400:
            text = body.decode("utf-8", "replace")
            raise LLMError(f"llm api {status}: {text}", status_code=status, body=body)
        return _parse_completion(body, status)


def _parse_completion(body: bytes, status: int) -> Response:
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise LLMError(f"llm parse: {exc}", status_code=status, body=body) from exc
    if not isinstance(data, dict):
        raise LLMError("llm parse: response must be an object", status_code=status, body=body)
    choices = data.get("choices") or []
    if not isinstance(choices, list):
        raise LLMError("llm parse: choices must be a list", status_code=status, body=body)
    if not choices:
        raise LLMError("llm: empty choices", status_code=status, body=body)
    first = choices[0] if isinstance(choices[0], dict) else {}
    message = first.get("message") or {}
    if not isinstance(message, dict):
        raise LLMError("llm parse: message must be an object", status_code=status, body=body)
    content = message.get("content")
    if content is not None and not isinstance(content, str):
        raise LLMError("llm parse: content must be a string", status_code=status, body=body)
    content = content or ""
    tool_calls = [ToolCall.from_dict(tc) for tc in (message.get("tool_calls") or [])]
    raw_usage = data.get("usage") or {}
    usage = Usage(
        prompt_tokens=int(raw_usage.get("prompt_tokens") or 0),
        completion_tokens=int(raw_usage.get("completion_tokens") or 0),
        total_tokens=int(raw_usage.get("total_tokens") or 0),
    )
    return Response(
        content=content,
        tool_calls=tool_calls,
        message=Message(role=_text(message.get("role")), content=content, tool_calls=tool_calls),
        usage=usage,
    )


class Pool:
    """Named backends with a default used when a name is unknown."""

    def __init__(self, backends: dict[str, Backend], default: str = "") -> None:
        self.backends = backends
        self.default = default

    def get(self, name: str) -> Backend:
        backend = self.backends.get(name) or self.backends.get(self.default)
        if backend is None:
            raise LLMError(f"llm: no backend {name!r} and no default")
        return backend


def new_pool(cfg: LLMPool) -> Pool:
    """Build the backend pool described by the configuration."""
    backends = {bc.name: Backend(bc) for bc in cfg.backends}
    if not backends:
        raise LLMError("llm: no backends configured")
    return Pool(backends, cfg.default)