# krill

The core of a small agent runtime. A single YAML document describes the
runtime; messages travel over an in-process bus; a pool of
OpenAI-compatible chat backends answers them; and an agent loop runs
ReAct turns (think, call tools, answer) for each conversation thread.

## What is inside

| Module | Purpose |
| --- | --- |
| `krill.config_types` | Dataclasses for every section of the configuration, `defaults()` and `build_root(data)` |
| `krill.config` | `load`, `load_dotenv`, `$VAR` expansion and the `validate_*` checks |
| `krill.bus` | `Envelope`, `Role`, `reply_key`, `set_reply_prefix` and the bounded `LocalBus` |
| `krill.registry` | `ProtocolRegistry` of ingress protocol plugin factories |
| `krill.llm` | OpenAI-compatible chat completion `Backend` and named backend `Pool` |
| `krill.agent` | The per-thread ReAct `Loop` and `user_facing_llm_error` |

Install with `pip install .`; the test suite needs the `test` extra
(`pip install .[test]`, then `pytest`).

## Configuration

```python
from krill.config import ConfigError, load

try:
    root = load("krill.yaml")
except ConfigError as exc:
    print(f"config error: {exc}")
else:
    print(root.core.memory_backend)   # "sqlite" unless set
    print(root.otel.profile)          # "off" unless set
```

`load` reads a `.env` file next to the configuration first (`load_dotenv`),
setting only variables that are not already in the environment; `export`
prefixes and surrounding quotes are accepted. It then expands `$VAR` and
`${VAR}` references in the YAML text, lays the document over `defaults()`,
applies the legacy `core.strict_v2_validation` alias and validates the
result. Any problem is raised as a `ConfigError` (a `ValueError`) whose
message names the offending field, for example
`core.sandbox_type must be one of exec|wasm|noop`.

A minimal document:

```yaml
core:
  sandbox_type: exec
llm:
  default: main
  backends:
    - name: main
      base_url: https://llm.example.com
      api_key: placeholder
      model: $LLM_MODEL
      max_tokens: 1024
protocols:
  - name: http
    enabled: true
    config: {}
```

Protocols must be one of `http`, `pubsub`, `telegram`, `webhook` or `a2a`,
each named at most once; enabled ones are checked for the settings they need
(`validate_protocol`). Org schemas, cooperative workflows, sessions,
scheduler entries, planner profiles, capabilities and the control-plane
audit retention are checked by `validate_org_schemas`, `validate_workflows`,
`validate_sessions`, `validate_scheduler`, `validate_planner` and
`validate_control_plane`; `validate(root)` runs them all.

## The bus

```python
from krill.bus import BackpressureError, Envelope, LocalBus, Role, reply_key

bus = LocalBus(16)
sub = bus.subscribe_queue(reply_key("http"))     # "__reply__:http"

bus.publish(reply_key("http"), Envelope(id="r1", client_id="c1", role=Role.ASSISTANT, text="hi"))
reply = sub.get(timeout=1.0)
sub.close()
```

Every subscription has its own bounded queue. When any subscriber of a key
is full, `publish` raises `BackpressureError` and delivers nothing; when the
optional `cancel` event is already set it raises
`concurrent.futures.CancelledError`. `Subscription.get` raises
`TimeoutError` when nothing arrives in time and returns `None` once the
subscription is closed and drained; iterating a subscription yields
envelopes until then. `unsubscribe(key)` closes every subscription on a
key, and `subscriber_count(key)` reports how many there are. The reply
prefix can be changed with `set_reply_prefix`; a blank prefix restores
`__reply__`.

## Protocol plugins

```python
from krill.registry import copy_config_map, global_registry

registry = global_registry()
registry.register_protocol("my-proto", lambda cfg: MyPlugin(cfg))
plugin = registry.build_protocol("my-proto", copy_config_map({"addr": ":8080"}))
```

A plugin follows the `ProtocolPlugin` protocol: a `name`, a non-blocking
`start(bus, log)` and `stop()`. Building an unregistered name raises
`UnknownProtocolError`.

## LLM backends

```python
from krill.config_types import LLMConfig, LLMPool
from krill.llm import Message, Request, new_pool

pool = new_pool(LLMPool(
    default="main",
    backends=[LLMConfig(name="main", base_url="https://llm.example.com",
                        api_key="placeholder", model="some-model")],
))
backend = pool.get("main")
response = backend.complete(Request(
    model_name="main",
    system_prompt="Be brief.",
    messages=[Message(role="user", content="hello")],
))
print(response.content, response.usage.total_tokens)
```

Requests go to `<base_url>/v1/chat/completions` with a bearer token.
`max_tokens` comes from the request, else the backend configuration, else
4096. `Pool.get` falls back to the default backend when a name is unknown.
When a provider rejects a tool call with HTTP 400 (`tool_use_failed`), the
request is retried once without tools. Failures raise `LLMError`, which
carries `status_code` and `body`. `set_client_factory` replaces how
backends create their `httpx.Client` and returns a function that restores
the previous factory.

## The agent loop

`krill.agent.Loop(cfg, bus, memory, mem_window, skills, llms, log)` takes an
`AgentConfig`, a `LocalBus`, a `MemoryStore`, a history window (100 when not
positive), a `SkillView`, an LLM `Pool` and a logger. `run_once(envelope)`
handles one user message: it stores it, calls the model with the windowed
history and the active tool definitions, executes any tool calls through the
skill view, repeats up to the agent's `max_turns` (20 when unset), and
publishes the final answer to the reply key of the protocol the message came
from. The reply's `meta` carries the agent name, trace and request ids and
the token totals. Provider errors become a short user-facing reply
(`user_facing_llm_error`). `deliver` queues messages (up to 32) and
`run(stop)` processes them until the `threading.Event` is set or the loop
has been idle for 30 minutes.

## What this package does not do

- It provides no memory store and no skill registry: `MemoryStore` and
  `SkillView` are protocols that you implement and pass to `Loop`.
- It ships no protocol plugins (HTTP, pub/sub, Telegram, webhook, A2A); only
  their configuration is validated, and the registry builds whatever you
  register.
- It has no command-line program, no server and no engine that wires the
  parts together; there is no scheduler, session service, control plane or
  telemetry export either, even though their configuration sections are
  parsed and validated.