"""Configuration document types and their decoding from parsed YAML."""

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Mapping, get_args, get_origin


@dataclass
class ControlPlaneConfig:
    path: str = ""
    audit_retention: int = 0


@dataclass
class OTELConfig:
    """Tracing and metrics export settings."""

    profile: str = ""  # off | minimal | standard | debug
    exporter: str = ""  # none | log | otlp_http
    endpoint: str = ""
    service_name: str = ""
    sample_rate: float = 0.0
    flush_interval_ms: int = 0
    console_debug: bool = False


@dataclass
class CoreConfig:
    """Transport-independent runtime settings."""

    bus_buffer: int = 0
    max_clients: int = 0
    sandbox_type: str = ""  # exec | wasm | noop
    skill_timeout_ms: int = 0
    wasm_fuel: int = 0
    memory_window: int = 0
    memory_backend: str = ""  # sqlite | file | ram
    memory_path: str = ""
    log_format: str = ""  # json | text
    log_generated_code: bool = False
    log_generated_code_max_bytes: int = 0
    reply_bus_prefix: str = ""
    strict_envelope_v2_validation: bool = False
    # Legacy alias of strict_envelope_v2_validation.
    strict_v2_validation: bool = False


@dataclass
class PluginRef:
    """An ingress protocol plugin and its raw configuration map."""

    name: str = ""
    enabled: bool = False
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentConfig:
    """A named agent the orchestrator can assign to a client."""

    name: str = ""
    description: str = ""
    llm: str = ""
    max_turns: int = 0
    system_prompt: str = ""
    eager_skills: list[str] = field(default_factory=list)
    match_protocol: str = ""


@dataclass
class WorkflowPolicyConfig:
    max_hops: int = 0
    allowed_pairs: list[str] = field(default_factory=list)  # "origin->target"
    step_timeout_ms: int = 0
    token_budget: int = 0


@dataclass
class WorkflowConfig:
    id: str = ""
    orchestration_mode: str = ""  # single | cooperative
    org_schema: str = ""
    policy: WorkflowPolicyConfig = field(default_factory=WorkflowPolicyConfig)


@dataclass
class OrgRoleConfig:
    name: str = ""
    kind: str = ""  # router | specialist | synthesizer | custom
    agent: str = ""
    responsibilities: list[str] = field(default_factory=list)


@dataclass
class OrgHandoffRuleConfig:
    from_: str = field(default="", metadata={"yaml": "from"})
    to: list[str] = field(default_factory=list)


@dataclass
class OrgEscalationRuleConfig:
    from_: str = field(default="", metadata={"yaml": "from"})
    to: str = ""
    when: str = ""


@dataclass
class OrgSchemaConfig:
    schema_id: str = ""
    version: str = ""
    roles: list[OrgRoleConfig] = field(default_factory=list)
    handoff_rules: list[OrgHandoffRuleConfig] = field(default_factory=list)
    escalation_rules: list[OrgEscalationRuleConfig] = field(default_factory=list)


@dataclass
class SkillConfig:
    name: str = ""
    description: str = ""
    runtime: str = ""  # builtin | exec | wasm
    path: str = ""
    input_schema: str = ""
    env: dict[str, str] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)


@dataclass
class LLMConfig:
    name: str = ""
    base_url: str = ""
    api_key: str = ""
    model: str = ""
    max_tokens: int = 0


@dataclass
class LLMPool:
    default: str = ""
    backends: list[LLMConfig] = field(default_factory=list)


@dataclass
class SessionConfig:
    enabled: bool = False
    path: str = ""
    resume_on_inbound: bool = False
    retention_max_messages: int = 0
    summarization_threshold: int = 0
    summarization_keep_recent: int = 0
    default_merge_conflict_mode: str = ""


@dataclass
class ScheduleConfig:
    id: str = field(default="", metadata={"yaml": "schedule_id"})
    cron_expr: str = ""
    timezone: str = ""
    target: str = ""
    payload_template: str = ""
    concurrency_policy: str = ""
    enabled: bool = False
    missed_run_policy: str = ""
    retry_limit: int = 0
    retry_backoff_ms: int = 0
    session_mode: str = ""
    tenant: str = ""
    client_id: str = ""
    thread_id: str = ""


@dataclass
class SchedulerConfig:
    enabled: bool = False
    tick_ms: int = 0
    schedules: list[ScheduleConfig] = field(default_factory=list)


@dataclass
class PlannerConfig:
    progressive_mode: str = ""  # monitor | enforce
    default_sandbox_profile: str = ""  # strict | balanced | extended
    default_runtime_profile: str = ""  # default | opencode


@dataclass
class CapabilityConfig:
    """A policy-governed executable capability."""

    name: str = ""
    type: str = ""
    ref: str = ""
    description: str = ""
    release_channel: str = ""
    runtime_profile: str = ""
    sandbox_profile: str = ""
    protocols: list[str] = field(default_factory=list)
    workflows: list[str] = field(default_factory=list)
    allowed_agents: list[str] = field(default_factory=list)
    required_secrets: list[str] = field(default_factory=list)
    required_approvals: int = 0
    allow_network: bool = False
    allow_filesystem_write: bool = False
    max_timeout_ms: int = 0
    cost_weight: int = 0
    latency_weight: int = 0
    trust_score: int = 0
    risk_score: int = 0
    max_concurrency: int = 0
    fallbacks: list[str] = field(default_factory=list)


@dataclass
class Root:
    """The top-level runtime configuration document."""

    core: CoreConfig = field(default_factory=CoreConfig)
    otel: OTELConfig = field(default_factory=OTELConfig)
    control_plane: ControlPlaneConfig = field(default_factory=ControlPlaneConfig)
    llm: LLMPool = field(default_factory=LLMPool)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    planner: PlannerConfig = field(default_factory=PlannerConfig)
    protocols: list[PluginRef] = field(default_factory=list)
    agents: list[AgentConfig] = field(default_factory=list)
    workflows: list[WorkflowConfig] = field(default_factory=list)
    org_schemas: list[OrgSchemaConfig] = field(default_factory=list)
    skills: list[SkillConfig] = field(default_factory=list)
    capabilities: list[CapabilityConfig] = field(default_factory=list)

    def apply_compat(self) -> None:
        """Honour the legacy strict_v2_validation alias."""
        if self.core.strict_v2_validation:
            self.core.strict_envelope_v2_validation = True


def defaults() -> Root:
    """Return a configuration holding every built-in default."""
    return Root(
        core=CoreConfig(
            bus_buffer=256,
            max_clients=1000,
            sandbox_type="exec",
            skill_timeout_ms=30000,
            wasm_fuel=1_000_000_000,
            memory_window=100,
            memory_backend="sqlite",
            memory_path="./.krill/memory.db",
            log_format="json",
            log_generated_code=False,
            log_generated_code_max_bytes=4000,
            reply_bus_prefix="__reply__",
            strict_envelope_v2_validation=False,
        ),
        otel=OTELConfig(
            profile="off",
            exporter="none",
            service_name="krill",
            sample_rate=1.0,
            flush_interval_ms=5000,
            console_debug=False,
        ),
        control_plane=ControlPlaneConfig(
            path="./.krill/control-plane.json",
            audit_retention=5000,
        ),
        sessions=SessionConfig(
            enabled=False,
            path="./.krill/sessions.json",
            resume_on_inbound=True,
            retention_max_messages=200,
            summarization_threshold=24,
            summarization_keep_recent=8,
            default_merge_conflict_mode="last-write-wins",
        ),
        scheduler=SchedulerConfig(enabled=False, tick_ms=1000),
        planner=PlannerConfig(
            progressive_mode="monitor",
            default_sandbox_profile="balanced",
            default_runtime_profile="default",
        ),
    )


def build_root(data: Any) -> Root:
    """Overlay a parsed YAML document on the defaults.

    Keys present in the document replace defaults; nested sections merge
    field by field and lists are replaced whole. Unknown keys are ignored.
    Raises ValueError when a value has the wrong shape for its field.
    """
    root = defaults()
    if data is None:
        return root
    return _decode_into(root, data, "")


def _yaml_key(f: dataclasses.Field) -> str:
    return f.metadata.get("yaml", f.name)


def _zero(tp: Any) -> Any:
    if dataclasses.is_dataclass(tp):
        return tp()
    origin = get_origin(tp)
    if origin is list:
        return []
    if origin is dict:
        return {}
    if tp in (str, int, float, bool):
        return tp()
    return None


def _decode_into(obj: Any, data: Any, path: str) -> Any:
    if not isinstance(data, Mapping):
        where = path or "document"
        raise ValueError(f"{where}: expected a mapping, got {type(data).__name__}")
    for f in dataclasses.fields(obj):
        key = _yaml_key(f)
        if key not in data:
            continue
        where = f"{path}.{key}" if path else key
        setattr(obj, f.name, _convert(f.type, data[key], getattr(obj, f.name), where))
    return obj


def _convert(tp: Any, value: Any, current: Any, where: str) -> Any:
    origin = get_origin(tp)
    if value is None:
        # A null clears collections but leaves scalars and sections untouched.
        if origin in (list, dict):
            return _zero(tp)
        return current
    if tp is Any:
        return value
    if dataclasses.is_dataclass(tp):
        target = current if current is not None else tp()
        return _decode_into(target, value, where)
    if origin is list:
        (item_tp,) = get_args(tp)
        if not isinstance(value, list):
            raise ValueError(f"{where}: expected a sequence, got {type(value).__name__}")
        return [
            _convert(item_tp, item, _zero(item_tp), f"{where}[{pos}]")
            for pos, item in enumerate(value)
        ]
    if origin is dict:
        _, value_tp = get_args(tp)
        if not isinstance(value, Mapping):
            raise ValueError(f"{where}: expected a mapping, got {type(value).__name__}")
        merged = dict(current) if current else {}
        for k, v in value.items():
            merged[_to_str(k, where)] = _convert(value_tp, v, _zero(value_tp), f"{where}.{k}")
        return merged
    return _convert_scalar(tp, value, where)


def _to_str(value: Any, where: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise ValueError(f"{where}: expected a string, got {type(value).__name__}")


def _convert_scalar(tp: Any, value: Any, where: str) -> Any:
    if tp is str:
        return _to_str(value, where)
    if tp is bool:
        if isinstance(value, bool):
            return value
        raise ValueError(f"{where}: expected a boolean, got {value!r}")
    if tp is int:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        raise ValueError(f"{where}: expected an integer, got {value!r}")
    if tp is float:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
        raise ValueError(f"{where}: expected a number, got {value!r}")
    raise ValueError(f"{where}: unsupported field type {tp!r}")