import json

import httpx
import pytest

from krill.config_types import LLMConfig, LLMPool
from krill.llm import (
    Backend,
    FunctionCall,
    LLMError,
    Message,
    Request,
    ToolCall,
    ToolDef,
    new_pool,
    set_client_factory,
    should_retry_without_tools,
)


def make_backend(handler):
    cfg = LLMConfig(name="test", base_url="https://llm.example.com", api_key="placeholder", model="m", max_tokens=32)
    return Backend(cfg, httpx.Client(transport=httpx.MockTransport(handler)))


def make_tool():
    return ToolDef(name="tool", description="desc", parameters='{"type":"object","properties":{}}')


def test_complete_success():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={
            "choices": [{"message": {"role": "assistant", "content": "ok"}}],
            "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
        })

    resp = make_backend(handler).complete(Request(
        model_name="test", system_prompt="sys", messages=[Message(role="user", content="hi")]
    ))
    assert resp.content == "ok"
    assert resp.message.role == "assistant"
    assert resp.usage.total_tokens == 2
    assert seen[0].url.path == "/v1/chat/completions"
    assert seen[0].headers["Authorization"] == "Bearer placeholder"
    payload = json.loads(seen[0].content)
    assert payload["messages"][0] == {"role": "system", "content": "sys"}
    assert payload["max_tokens"] == 32


@pytest.mark.parametrize("handler", [
    lambda r: httpx.Response(500, text="boom"),
    lambda r: httpx.Response(200, text="{"),
    lambda r: httpx.Response(200, json={"choices": []}),
])
def test_complete_error_branches(handler):
    with pytest.raises(LLMError):
        make_backend(handler).complete(Request(model_name="test"))


def test_http_error_carries_status():
    backend = make_backend(lambda r: httpx.Response(500, text="boom"))
    with pytest.raises(LLMError) as info:
        backend.complete(Request(model_name="test"))
    assert info.value.status_code == 500
    assert "llm api 500" in str(info.value)


def test_request_shape_with_tools_and_null_content():
    payloads = []

    def handler(request):
        payloads.append(json.loads(request.content))
        return httpx.Response(200, json={
            "choices": [{"message": {
                "role": "assistant",
                "content": None,
                "tool_calls": [{"id": "1", "type": "function", "function": {"name": "tool", "arguments": "{}"}}],
            }}],
            "usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7},
        })

    resp = make_backend(handler).complete(Request(
        model_name="test",
        messages=[
            Message(role="assistant", tool_calls=[ToolCall(id="1", function=FunctionCall("tool", "{}"))]),
            Message(role="tool", content="done", tool_call_id="1"),
        ],
        tools=[make_tool()],
    ))
    assert resp.content == ""
    assert len(resp.tool_calls) == 1
    assert resp.tool_calls[0].function.name == "tool"
    payload = payloads[0]
    assert payload["max_tokens"] == 32
    assert len(payload["messages"]) == 2
    assert payload["messages"][0]["content"] is None
    assert payload["messages"][0]["tool_calls"][0]["function"]["name"] == "tool"
    assert payload["messages"][1]["tool_call_id"] == "1"
    assert payload["tools"][0]["function"]["parameters"] == {"type": "object", "properties": {}}


def test_pool_get_fallback_and_errors():
    pool = new_pool(LLMPool(default="a", backends=[LLMConfig(name="a", base_url="http://x", api_key="placeholder", model="m")]))
    assert pool.get("missing") is pool.get("a")
    with pytest.raises(LLMError):
        new_pool(LLMPool())
    no_default = new_pool(LLMPool(default="missing", backends=[LLMConfig(name="only", base_url="http://x", api_key="placeholder", model="m")]))
    with pytest.raises(LLMError):
        no_default.get("ghost")


def test_retry_without_tools_on_tool_use_failed():
    payloads = []

    def handler(request):
        payload = json.loads(request.content)
        payloads.append(payload)
        if len(payloads) == 1:
            return httpx.Response(400, text='{"error":{"code":"tool_use_failed","message":"Failed to call a function"}}')
        return httpx.Response(200, json={
            "choices": [{"message": {"role": "assistant", "content": "fallback-ok"}}],
            "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
        })

    resp = make_backend(handler).complete(Request(
        model_name="test", system_prompt="sys",
        messages=[Message(role="user", content="hello")], tools=[make_tool()],
    ))
    assert resp.content == "fallback-ok"
    assert len(payloads) == 2
    assert "tools" in payloads[0]
    assert "tools" not in payloads[1]
    assert "Tool calling is unavailable" in payloads[1]["messages"][0]["content"]


def test_no_retry_without_tools_on_plain_400():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(400, text="bad request")

    with pytest.raises(LLMError):
        make_backend(handler).complete(Request(model_name="t", tools=[make_tool()]))
    assert len(calls) == 1


def test_should_retry_without_tools():
    with_tools = Request(tools=[make_tool()])
    assert should_retry_without_tools(400, b"TOOL_USE_FAILED", with_tools) is True
    assert should_retry_without_tools(400, "failed to call a function", with_tools) is True
    assert should_retry_without_tools(500, b"tool_use_failed", with_tools) is False
    assert should_retry_without_tools(400, b"tool_use_failed", Request()) is False


def test_set_client_factory():
    body = {"choices": [{"message": {"role": "assistant", "content": "factory-ok"}}],
            "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2}}
    restore = set_client_factory(
        lambda: httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body)))
    )
    try:
        pool = new_pool(LLMPool(default="mock", backends=[LLMConfig(name="mock", base_url="http://mock.local", api_key="placeholder", model="m")]))
        resp = pool.get("mock").complete(Request(model_name="mock"))
    finally:
        restore()
    assert resp.content == "factory-ok"