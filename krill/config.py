"""Loading and validation of the YAML configuration document."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any

import yaml

from krill.config_types import PluginRef, Root, build_root

__all__ = [
    "ConfigError",
    "load",
    "load_dotenv",
    "validate",
    "validate_protocol",
    "validate_sessions",
    "validate_scheduler",
    "validate_planner",
    "validate_org_schemas",
    "validate_workflows",
    "validate_control_plane",
]


class ConfigError(ValueError):
    """The configuration document is malformed or violates a rule."""


_SANDBOX_TYPES = ("exec", "wasm", "noop")
_MEMORY_BACKENDS = ("sqlite", "file", "ram")
_OTEL_PROFILES = ("off", "minimal", "standard", "debug")
_OTEL_EXPORTERS = ("none", "log", "otlp_http")
_PROGRESSIVE_MODES = ("monitor", "enforce")
_SANDBOX_PROFILES = ("strict", "balanced", "extended")
_RUNTIME_PROFILES = ("default", "opencode")
_CAPABILITY_TYPES = (
    "skill",
    "mcp",
    "code",
    "backend_action",
    "agent_action",
    "deployment_action",
    "notification_action",
)
_RELEASE_CHANNELS = ("stable", "candidate", "deprecated")
_MERGE_MODES = ("fail", "last-write-wins", "manual")
_CONCURRENCY_POLICIES = ("allow", "forbid", "replace")
_MISSED_RUN_POLICIES = ("skip", "run_once")
_SESSION_MODES = ("ephemeral", "persistent")
_PUBSUB_BROKERS = ("nats", "redis_streams", "solace")
_ROLE_KINDS = ("router", "specialist", "synthesizer", "custom")
_ORCHESTRATION_MODES = ("single", "cooperative")

# ${name}, a lone "${" (eaten), a single special character, or a plain name.
_ENV_REF = re.compile(r"\$(?:\{([^}]*)\}|\{|([*#$@!?\-0-9])|([A-Za-z0-9_]+))")


def _q(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _norm(value: str) -> str:
    return (value or "").strip().lower()


def _expand_env(text: str) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2) or match.group(3) or ""
        return os.environ.get(name, "") if name else ""

    return _ENV_REF.sub(replace, text)


def load(path: str | os.PathLike[str]) -> Root:
    """Read, default, expand and validate a YAML configuration file.

    A ``.env`` file beside the configuration is read first; its values only
    fill variables missing from the environment. ``$VAR`` and ``${VAR}``
    references in the document are then expanded.
    """
    path = Path(path)
    try:
        load_dotenv(path.parent / ".env")
    except OSError:
        pass
    text = _expand_env(path.read_text(encoding="utf-8"))
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"parse {path}: {exc}") from exc
    try:
        root = build_root(data)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    root.apply_compat()
    validate(root)
    return root


def load_dotenv(path: str | os.PathLike[str]) -> None:
    """Set KEY=VALUE pairs from a .env file for keys not yet in the environment.

    A missing file is not an error. Surrounding single or double quotes are
    removed from values; an ``export`` prefix is accepted.
    """
    try:
        handle = open(path, encoding="utf-8")
    except FileNotFoundError:
        return
    with handle:
        for raw in handle:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export "):].strip()
            key, sep, value = line.partition("=")
            if not sep:
                continue
            key = key.strip()
            if not key or key in os.environ:
                continue
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                value = value[1:-1]
            os.environ[key] = value


def validate(root: Root) -> None:
    """Check the whole document, raising ConfigError on the first violation."""
    if _norm(root.core.sandbox_type) not in _SANDBOX_TYPES:
        raise ConfigError("core.sandbox_type must be one of exec|wasm|noop")
    if _norm(root.core.memory_backend) not in _MEMORY_BACKENDS:
        raise ConfigError("core.memory_backend must be one of sqlite|file|ram")
    if _norm(root.otel.profile) not in _OTEL_PROFILES:
        raise ConfigError("otel.profile must be one of off|minimal|standard|debug")
    if _norm(root.otel.exporter) not in _OTEL_EXPORTERS:
        raise ConfigError("otel.exporter must be one of none|log|otlp_http")
    if not 0 <= root.otel.sample_rate <= 1:
        raise ConfigError("otel.sample_rate must be in range [0,1]")
    seen: set[str] = set()
    for ref in root.protocols:
        name = _norm(ref.name)
        if not name:
            raise ConfigError("protocol name is required")
        if name in seen:
            raise ConfigError(f"protocol {_q(name)} configured more than once")
        seen.add(name)
        validate_protocol(name, ref)
    validate_org_schemas(root)
    validate_workflows(root)
    validate_sessions(root)
    validate_scheduler(root)
    validate_planner(root)
    validate_control_plane(root)


def validate_control_plane(root: Root) -> None:
    if root.control_plane.audit_retention < 0:
        raise ConfigError("control_plane.audit_retention must be >= 0")


def validate_planner(root: Root) -> None:
    """Check planner defaults and every declared capability."""
    planner = root.planner
    if (_norm(planner.progressive_mode) or "monitor") not in _PROGRESSIVE_MODES:
        raise ConfigError("planner.progressive_mode must be monitor|enforce")
    if (_norm(planner.default_sandbox_profile) or "balanced") not in _SANDBOX_PROFILES:
        raise ConfigError("planner.default_sandbox_profile must be strict|balanced|extended")
    if (_norm(planner.default_runtime_profile) or "default") not in _RUNTIME_PROFILES:
        raise ConfigError("planner.default_runtime_profile must be default|opencode")

    seen: set[str] = set()
    for cap in root.capabilities:
        name = cap.name.strip()
        if not name:
            raise ConfigError("capabilities.name is required")
        if name in seen:
            raise ConfigError(f"capability {_q(name)} configured more than once")
        seen.add(name)
        if _norm(cap.type) not in _CAPABILITY_TYPES:
            raise ConfigError(
                f"capability {_q(name)} type must be "
                "skill|mcp|code|backend_action|agent_action|deployment_action|notification_action"
            )
        if (_norm(cap.release_channel) or "stable") not in _RELEASE_CHANNELS:
            raise ConfigError(f"capability {_q(name)} release_channel must be stable|candidate|deprecated")
        sandbox = _norm(cap.sandbox_profile)
        if sandbox and sandbox not in _SANDBOX_PROFILES:
            raise ConfigError(f"capability {_q(name)} sandbox_profile must be strict|balanced|extended")
        runtime = _norm(cap.runtime_profile)
        if runtime and runtime not in _RUNTIME_PROFILES:
            raise ConfigError(f"capability {_q(name)} runtime_profile must be default|opencode")
        if cap.max_timeout_ms < 0:
            raise ConfigError(f"capability {_q(name)} max_timeout_ms must be >= 0")
        if not 0 <= cap.trust_score <= 100:
            raise ConfigError(f"capability {_q(name)} trust_score must be in range [0,100]")
        if not 0 <= cap.risk_score <= 100:
            raise ConfigError(f"capability {_q(name)} risk_score must be in range [0,100]")
        if cap.max_concurrency < 0:
            raise ConfigError(f"capability {_q(name)} max_concurrency must be >= 0")


def validate_sessions(root: Root) -> None:
    sessions = root.sessions
    if (_norm(sessions.default_merge_conflict_mode) or "last-write-wins") not in _MERGE_MODES:
        raise ConfigError("sessions.default_merge_conflict_mode must be fail|last-write-wins|manual")
    if sessions.retention_max_messages < 0:
        raise ConfigError("sessions.retention_max_messages must be >= 0")
    if sessions.summarization_threshold < 0:
        raise ConfigError("sessions.summarization_threshold must be >= 0")
    if sessions.summarization_keep_recent < 0:
        raise ConfigError("sessions.summarization_keep_recent must be >= 0")
    if 0 < sessions.summarization_threshold <= sessions.summarization_keep_recent:
        raise ConfigError(
            "sessions.summarization_keep_recent must be < sessions.summarization_threshold"
        )


def validate_scheduler(root: Root) -> None:
    scheduler = root.scheduler
    if scheduler.tick_ms < 0:
        raise ConfigError("scheduler.tick_ms must be >= 0")
    seen: set[str] = set()
    for sched in scheduler.schedules:
        sid = sched.id.strip()
        if not sid:
            raise ConfigError("scheduler.schedules.schedule_id is required")
        if sid in seen:
            raise ConfigError(f"scheduler schedule {_q(sid)} configured more than once")
        seen.add(sid)
        label = f"scheduler schedule {_q(sid)}"
        if not sched.cron_expr.strip():
            raise ConfigError(f"{label} requires cron_expr")
        if not sched.target.strip():
            raise ConfigError(f"{label} requires target")
        if (_norm(sched.concurrency_policy) or "allow") not in _CONCURRENCY_POLICIES:
            raise ConfigError(f"{label} concurrency_policy must be allow|forbid|replace")
        if (_norm(sched.missed_run_policy) or "skip") not in _MISSED_RUN_POLICIES:
            raise ConfigError(f"{label} missed_run_policy must be skip|run_once")
        if sched.retry_limit < 0:
            raise ConfigError(f"{label} retry_limit must be >= 0")
        if sched.retry_backoff_ms < 0:
            raise ConfigError(f"{label} retry_backoff_ms must be >= 0")
        if (_norm(sched.session_mode) or "persistent") not in _SESSION_MODES:
            raise ConfigError(f"{label} session_mode must be ephemeral|persistent")


def _config_str(config: dict[str, Any] | None, key: str) -> str:
    value = (config or {}).get(key)
    return value if isinstance(value, str) else ""


def validate_protocol(name: str, ref: PluginRef) -> None:
    """Check one protocol entry against the supported protocol matrix."""
    if name == "http":
        return
    if name not in ("pubsub", "telegram", "webhook", "a2a"):
        raise ConfigError(
            f"protocol {_q(name)} is not in compatibility matrix (http|pubsub|telegram|webhook|a2a)"
        )
    if not ref.enabled:
        return
    cfg = ref.config
    if name == "pubsub":
        broker = _norm(_config_str(cfg, "broker")) or "nats"
        if broker not in _PUBSUB_BROKERS:
            raise ConfigError(
                f"protocol {_q(name)} requires config.broker in nats|redis_streams|solace"
            )
        if not _config_str(cfg, "topic_in").strip() or not _config_str(cfg, "topic_out").strip():
            raise ConfigError(
                f"protocol {_q(name)} requires config.topic_in and config.topic_out when enabled"
            )
    elif name == "telegram":
        if not _config_str(cfg, "token").strip():
            raise ConfigError(f"protocol {_q(name)} requires config.token when enabled")
    elif name == "webhook":
        if not _config_str(cfg, "path").startswith("/"):
            raise ConfigError(f"protocol {_q(name)} requires config.path starting with '/'")
    else:  # a2a
        path = _config_str(cfg, "path")
        if path and not path.startswith("/"):
            raise ConfigError(f"protocol {_q(name)} requires config.path starting with '/'")


def validate_org_schemas(root: Root) -> None:
    """Check cooperative topologies: roles, agents, handoffs and escalations."""
    if not root.org_schemas:
        return
    agents = {agent.name.strip() for agent in root.agents}
    seen: set[str] = set()
    for schema in root.org_schemas:
        sid = schema.schema_id.strip()
        if not sid:
            raise ConfigError("org_schemas.schema_id is required")
        if sid in seen:
            raise ConfigError(f"org_schemas {_q(sid)} configured more than once")
        seen.add(sid)
        label = f"org_schema {_q(sid)}"
        if not schema.roles:
            raise ConfigError(f"{label} requires at least one role")

        roles: set[str] = set()
        kinds: list[str] = []
        for role in schema.roles:
            r_name = role.name.strip()
            r_kind = _norm(role.kind)
            r_agent = role.agent.strip()
            if not (r_name and r_kind and r_agent):
                raise ConfigError(f"{label} role requires name/kind/agent")
            if r_name in roles:
                raise ConfigError(f"{label} role {_q(r_name)} duplicated")
            roles.add(r_name)
            if r_agent not in agents:
                raise ConfigError(
                    f"{label} role {_q(r_name)} references unknown agent {_q(r_agent)}"
                )
            if r_kind not in _ROLE_KINDS:
                raise ConfigError(f"{label} role {_q(r_name)} has unsupported kind {_q(r_kind)}")
            kinds.append(r_kind)
        if kinds.count("router") != 1:
            raise ConfigError(f"{label} must define exactly one router role")
        if kinds.count("synthesizer") != 1:
            raise ConfigError(f"{label} must define exactly one synthesizer role")
        if kinds.count("specialist") < 1:
            raise ConfigError(f"{label} must define at least one specialist role")

        for rule in schema.handoff_rules:
            origin = rule.from_.strip()
            if origin not in roles:
                raise ConfigError(f"{label} handoff rule references unknown from role {_q(origin)}")
            if not rule.to:
                raise ConfigError(
                    f"{label} handoff rule from {_q(origin)} must include at least one destination"
                )
            for target in rule.to:
                if target.strip() not in roles:
                    raise ConfigError(
                        f"{label} handoff rule references unknown target role {_q(target)}"
                    )
        for esc in schema.escalation_rules:
            if esc.from_.strip() not in roles:
                raise ConfigError(
                    f"{label} escalation rule references unknown from role {_q(esc.from_)}"
                )
            if esc.to.strip() not in roles:
                raise ConfigError(
                    f"{label} escalation rule references unknown target role {_q(esc.to)}"
                )


def validate_workflows(root: Root) -> None:
    """Check workflow ids, modes and org schema references."""
    if not root.workflows:
        return
    schemas = {schema.schema_id.strip() for schema in root.org_schemas}
    seen: set[str] = set()
    for wf in root.workflows:
        wid = wf.id.strip()
        mode = _norm(wf.orchestration_mode)
        if not wid:
            raise ConfigError("workflows.id is required")
        if wid in seen:
            raise ConfigError(f"workflow {_q(wid)} configured more than once")
        seen.add(wid)
        mode = mode or "single"
        if mode not in _ORCHESTRATION_MODES:
            raise ConfigError(f"workflow {_q(wid)} orchestration_mode must be single|cooperative")
        if mode == "cooperative":
            org = wf.org_schema.strip()
            if not org:
                raise ConfigError(f"workflow {_q(wid)} in cooperative mode requires org_schema")
            if org not in schemas:
                raise ConfigError(f"workflow {_q(wid)} references unknown org_schema {_q(org)}")