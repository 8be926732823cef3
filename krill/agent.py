"""ReAct execution for a single conversation thread.

Each user message triggers a cycle: ask the model with the windowed history
and the active tool definitions; run any requested tools, store their
results and ask again; publish the first plain-text answer as the reply.
Replies go to the bus key of the protocol the message arrived on.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from concurrent.futures import CancelledError
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from krill.bus import BackpressureError, Envelope, LocalBus, Role, reply_key
from krill.config_types import AgentConfig
from krill.llm import LLMError, Message, Pool, Request, ToolDef

__all__ = ["MemoryStore", "SkillView", "Loop", "user_facing_llm_error"]

IDLE_TIMEOUT_SECONDS = 30 * 60
INBOX_CAPACITY = 32
DEFAULT_MAX_TURNS = 20
DEFAULT_MEMORY_WINDOW = 100
_POLL_SECONDS = 0.05

MAX_TURNS_REPLY = "I've reached the maximum reasoning steps. Please simplify your request."


@runtime_checkable
class MemoryStore(Protocol):
    """Conversation history per client and thread."""

    def append(self, client_id: str, thread_id: str, message: Message) -> None: ...

    def get(self, client_id: str, thread_id: str, limit: int) -> list[Message]: ...


@runtime_checkable
class SkillView(Protocol):
    """Per-loop view of the skills, some active and some loaded on demand."""

    def active_tool_defs(self) -> list[ToolDef]: ...

    def execute(self, name: str, arguments: str) -> tuple[str, bool]:
        """Run a skill; the flag is true when the call lazily activated it."""
        ...

    def active_count(self) -> int: ...

    def is_active(self, name: str) -> bool: ...


@dataclass
class _Tokens:
    prompt: int = 0
    completion: int = 0
    total: int = 0


class Loop:
    """Stateful agent execution context for one client session."""

    def __init__(
        self,
        cfg: AgentConfig,
        bus: LocalBus,
        memory: MemoryStore,
        mem_window: int,
        skills: SkillView | None,
        llms: Pool | None,
        log: logging.Logger | None = None,
    ) -> None:
        self.cfg = cfg
        self.bus = bus
        self.memory = memory
        self.mem_window = mem_window if mem_window > 0 else DEFAULT_MEMORY_WINDOW
        self.skills = skills
        self.llms = llms
        self.log = log or logging.getLogger(__name__)
        self.idle_timeout = IDLE_TIMEOUT_SECONDS
        self.client_id = ""
        self.thread_id = ""
        self.protocol = ""
        self._inbox: queue.Queue[Envelope] = queue.Queue(maxsize=INBOX_CAPACITY)
        self._trace_id = ""
        self._request_id = ""

    def deliver(self, env: Envelope | None) -> None:
        """Queue an inbound user envelope; drops it when the inbox is full."""
        if env is None:
            return
        if not self.client_id:
            self.client_id = env.client_id
            self.thread_id = env.thread_id
            self.protocol = env.source_protocol
        try:
            self._inbox.put_nowait(env)
        except queue.Full:
            self.log.warning("inbox full, dropping message client=%s", self.client_id)

    def run(self, stop: threading.Event | None = None) -> None:
        """Process delivered messages until ``stop`` is set or the loop idles out."""
        deadline = time.monotonic() + self.idle_timeout
        while True:
            if stop is not None and stop.is_set():
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.log.info("agent loop idle timeout client=%s", self.client_id)
                return
            try:
                env = self._inbox.get(timeout=min(remaining, _POLL_SECONDS))
            except queue.Empty:
                continue
            deadline = time.monotonic() + self.idle_timeout
            self.protocol = env.source_protocol
            if env.thread_id:
                self.thread_id = env.thread_id
            self._react(env)

    def run_once(self, env: Envelope | None) -> None:
        """Handle one inbound message without the idle loop."""
        if env is None:
            return
        if not self.client_id:
            self.client_id = env.client_id
        if env.thread_id:
            self.thread_id = env.thread_id
        self.protocol = env.source_protocol
        self._react(env)

    def _remember(self, message: Message) -> None:
        try:
            self.memory.append(self.client_id, self.thread_id, message)
        except Exception as exc:  # storage failures must not stop the conversation
            self.log.warning(
                "memory append failed client=%s thread=%s err=%s", self.client_id, self.thread_id, exc
            )

    def _history(self) -> list[Message]:
        try:
            return list(self.memory.get(self.client_id, self.thread_id, self.mem_window))
        except Exception as exc:
            self.log.warning(
                "memory get failed client=%s thread=%s err=%s", self.client_id, self.thread_id, exc
            )
            return []

    def _react(self, user_env: Envelope) -> None:
        meta = user_env.meta or {}
        self._trace_id = meta.get("trace_id") or uuid.uuid4().hex
        self._request_id = meta.get("request_id") or user_env.id

        self._remember(Message(role="user", content=user_env.text))
        max_turns = self.cfg.max_turns or DEFAULT_MAX_TURNS

        try:
            if self.llms is None:
                raise LLMError("llm: no backend pool configured")
            backend = self.llms.get(self.cfg.llm)
        except LLMError as err:
            self._reply(f"Configuration error: {err}", _Tokens())
            return

        tokens = _Tokens()
        for turn in range(max_turns):
            request = Request(
                model_name=self.cfg.llm,
                system_prompt=self.build_system_prompt(),
                messages=self._history(),
                tools=self.skills.active_tool_defs() if self.skills is not None else [],
            )
            started = time.monotonic()
            try:
                resp = backend.complete(request)
            except LLMError as err:
                self.log.error("llm error turn=%d err=%s", turn, err)
                self._reply(user_facing_llm_error(err), tokens)
                return
            tokens.prompt += resp.usage.prompt_tokens
            tokens.completion += resp.usage.completion_tokens
            tokens.total += resp.usage.total_tokens
            self.log.info(
                "llm call completed trace_id=%s request_id=%s turn=%d duration_ms=%d "
                "total_tokens=%d cumulative_total_tokens=%d tool_calls=%d",
                self._trace_id, self._request_id, turn,
                int((time.monotonic() - started) * 1000),
                resp.usage.total_tokens, tokens.total, len(resp.tool_calls),
            )
            self._remember(resp.message)

            if not resp.tool_calls:
                self._reply(resp.content, tokens)
                return

            for call in resp.tool_calls:
                self.log.info(
                    "skill call skill=%s client=%s turn=%d", call.function.name, self.client_id, turn
                )
                result = self._run_tool(call.function.name, call.function.arguments)
                self._remember(Message(role="tool", content=result, tool_call_id=call.id))

        self._reply(MAX_TURNS_REPLY, tokens)

    def _run_tool(self, name: str, arguments: str) -> str:
        if self.skills is None:
            return f"error: skill {name!r} unavailable"
        try:
            result, lazy_loaded = self.skills.execute(name, arguments)
        except Exception as exc:  # a failing skill becomes a tool result the model can read
            self.log.warning("skill error skill=%s err=%s", name, exc)
            return f"error: {exc}"
        if lazy_loaded:
            self.log.info("skill lazy-loaded skill=%s active_count=%d", name, self.skills.active_count())
        return result

    def _reply(self, text: str, tokens: _Tokens) -> None:
        env = Envelope(
            id=str(uuid.uuid4()),
            client_id=self.client_id,
            thread_id=self.thread_id,
            role=Role.ASSISTANT,
            text=text,
            source_protocol=self.protocol,
            meta={
                "agent": self.cfg.name,
                "trace_id": self._trace_id,
                "request_id": self._request_id,
                "tokens_prompt": str(tokens.prompt),
                "tokens_completion": str(tokens.completion),
                "tokens_total": str(tokens.total),
            },
        )
        key = reply_key(self.protocol)
        try:
            self.bus.publish(key, env)
        except (BackpressureError, CancelledError) as exc:
            self.log.warning("reply publish failed key=%s err=%s", key, exc)
            return
        self.log.info(
            "reply published client=%s agent=%s reply_key=%s reply_bytes=%d tokens_total=%d",
            self.client_id, self.cfg.name, key, len(text.encode("utf-8")), tokens.total,
        )

    def build_system_prompt(self) -> str:
        """Assemble the system prompt, with tool guidance when tools are active."""
        base = self.cfg.system_prompt or "You are a helpful, concise assistant."
        if self.skills is None:
            return base
        count = self.skills.active_count()
        if count > 0:
            base += f"\n\nYou have {count} tools available. Use them when appropriate."
            base += "\nWhen calling a tool, function.arguments must be strict JSON object text."
            base += "\nDo not emit XML-like tool tags such as <function=...>."
        if self.skills.is_active("code_exec"):
            base += (
                "\nWhen a request requires exact computation, code generation validation, parsing, "
                "or reproducible execution, use code_exec and base your final answer on its result."
            )
        return base


def user_facing_llm_error(err: BaseException | None) -> str:
    """Turn a provider failure into a message fit for the end user."""
    default = "I encountered an LLM provider error. Please try again."
    if err is None:
        return default
    low = str(err).lower()
    if "tool_use_failed" in low or "failed to call a function" in low:
        return (
            "The model returned an invalid tool call format. Please retry; "
            "I will continue without relying on that tool format."
        )
    if "llm api 4" in low:
        return "The LLM provider rejected this request. Please retry with a simpler prompt."
    if "llm api 5" in low or "timeout" in low:
        return "The LLM provider is temporarily unavailable. Please retry shortly."
    return default