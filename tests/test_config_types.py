import pytest
import yaml

from krill.config_types import (
    AgentConfig,
    CoreConfig,
    Root,
    build_root,
    defaults,
)

BASE = """
core:
  sandbox_type: exec
llm:
  default: gpt4o
  backends:
    - name: gpt4o
      base_url: https://example.test
      api_key: test
      model: x
      max_tokens: 1
protocols:
  - name: http
    enabled: true
    config: {}
"""


def _build(text):
    return build_root(yaml.safe_load(text))


def test_defaults_memory_backend_sqlite():
    got = _build(BASE)
    assert got.core.memory_backend == "sqlite"


def test_defaults_otel_off():
    got = _build(BASE)
    assert got.otel.profile == "off"
    assert got.otel.exporter == "none"


def test_session_and_scheduler_defaults():
    got = _build(BASE)
    assert got.sessions.path != ""
    assert got.sessions.default_merge_conflict_mode == "last-write-wins"
    assert got.scheduler.tick_ms == 1000


def test_compat_legacy_strict_flag():
    got = _build(BASE.replace("sandbox_type: exec", "sandbox_type: exec\n  strict_v2_validation: true"))
    assert got.core.strict_envelope_v2_validation is False
    got.apply_compat()
    assert got.core.strict_envelope_v2_validation is True


def test_apply_compat_leaves_flag_when_alias_unset():
    root = Root(core=CoreConfig(strict_envelope_v2_validation=False))
    root.apply_compat()
    assert root.core.strict_envelope_v2_validation is False


def test_nested_section_merges_with_defaults():
    got = _build(BASE)
    assert got.core.sandbox_type == "exec"
    assert got.core.bus_buffer == 256
    assert got.core.reply_bus_prefix == "__reply__"
    assert got.llm.backends[0].api_key == "test"
    assert got.llm.backends[0].max_tokens == 1


def test_defaults_values():
    root = defaults()
    assert root.core.max_clients == 1000
    assert root.core.wasm_fuel == 1_000_000_000
    assert root.control_plane.audit_retention == 5000
    assert root.sessions.summarization_threshold == 24
    assert root.sessions.summarization_keep_recent == 8
    assert root.planner.default_sandbox_profile == "balanced"
    assert root.protocols == []


def test_none_document_yields_defaults():
    assert build_root(None) == defaults()


def test_org_schema_and_workflow_keys():
    got = _build(
        BASE
        + """
org_schemas:
  - schema_id: schema-1
    roles:
      - name: router
        kind: router
        agent: a
    handoff_rules:
      - from: router
        to: [specialist]
    escalation_rules:
      - from: router
        to: synth
        when: stuck
workflows:
  - id: wf-1
    orchestration_mode: cooperative
    org_schema: schema-1
"""
    )
    schema = got.org_schemas[0]
    assert schema.schema_id == "schema-1"
    assert schema.handoff_rules[0].from_ == "router"
    assert schema.handoff_rules[0].to == ["specialist"]
    assert schema.escalation_rules[0].to == "synth"
    assert got.workflows[0].id == "wf-1"
    assert got.workflows[0].policy.max_hops == 0


def test_schedule_id_key():
    got = _build(
        BASE
        + """
scheduler:
  schedules:
    - schedule_id: nightly
      cron_expr: "* * * * *"
      target: nightly
"""
    )
    assert got.scheduler.schedules[0].id == "nightly"
    assert got.scheduler.schedules[0].cron_expr == "* * * * *"
    assert got.scheduler.tick_ms == 1000


def test_list_items_start_from_zero_values():
    got = _build(BASE + "agents:\n  - name: router-agent\n    llm: gpt4o\n")
    assert got.agents == [AgentConfig(name="router-agent", llm="gpt4o")]


def test_plugin_config_kept_raw():
    got = _build(BASE.replace("config: {}", "config:\n      poll_ms: 1000\n      token: token"))
    assert got.protocols[0].config == {"poll_ms": 1000, "token": "token"}


def test_scalar_into_string_field():
    got = build_root({"llm": {"backends": [{"name": "a", "api_key": 123, "model": True}]}})
    assert got.llm.backends[0].api_key == "123"
    assert got.llm.backends[0].model == "true"


def test_int_into_float_field():
    got = build_root({"otel": {"sample_rate": 1}})
    assert got.otel.sample_rate == 1.0
    assert isinstance(got.otel.sample_rate, float)


def test_skill_env_values_become_strings():
    got = build_root({"skills": [{"name": "s", "env": {"PORT": 8080}}]})
    assert got.skills[0].env == {"PORT": "8080"}


@pytest.mark.parametrize(
    "doc, where",
    [
        ({"core": {"bus_buffer": "abc"}}, "core.bus_buffer"),
        ({"core": ["x"]}, "core"),
        ({"sessions": {"enabled": "maybe"}}, "sessions.enabled"),
        ({"agents": {"name": "x"}}, "agents"),
        ({"otel": {"sample_rate": "high"}}, "otel.sample_rate"),
        ({"core": {"max_clients": True}}, "core.max_clients"),
    ],
)
def test_wrong_shapes_raise(doc, where):
    with pytest.raises(ValueError, match=where.replace(".", r"\.")):
        build_root(doc)


def test_non_mapping_document_raises():
    with pytest.raises(ValueError, match="document"):
        build_root(["core"])


def test_null_section_keeps_defaults_and_clears_lists():
    got = build_root({"core": None, "protocols": None})
    assert got.core.bus_buffer == 256
    assert got.protocols == []