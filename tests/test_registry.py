import pytest

from krill.registry import (
    ProtocolPlugin,
    ProtocolRegistry,
    UnknownProtocolError,
    copy_config_map,
    global_registry,
)


class FakeProtocol:
    def __init__(self, name):
        self.name = name
        self.started = False
        self.stopped = False

    def start(self, bus, log):
        self.started = True

    def stop(self):
        self.stopped = True


def test_copy_config_map_is_independent():
    src = {"a": 1}
    cp = copy_config_map(src)
    cp["a"] = 2
    assert src["a"] == 1
    assert cp["a"] == 2


def test_copy_config_map_of_empty_is_fresh_dict():
    assert copy_config_map(None) == {}
    empty = {}
    cp = copy_config_map(empty)
    cp["x"] = 1
    assert empty == {}


def test_build_passes_config_to_factory():
    seen = {}
    plugin = FakeProtocol("engine-test-proto")

    def factory(cfg):
        seen.update(cfg)
        return plugin

    reg = ProtocolRegistry()
    reg.register_protocol("engine-test-proto", factory)
    built = reg.build_protocol("engine-test-proto", {"_strict_v2_validation": True})
    assert built is plugin
    assert seen == {"_strict_v2_validation": True}
    assert isinstance(built, ProtocolPlugin)


def test_unknown_protocol_raises():
    reg = ProtocolRegistry()
    with pytest.raises(UnknownProtocolError, match="missing-proto") as info:
        reg.build_protocol("missing-proto", {})
    assert info.value.name == "missing-proto"


def test_register_replaces_factory():
    reg = ProtocolRegistry()
    reg.register_protocol("p", lambda cfg: FakeProtocol("first"))
    reg.register_protocol("p", lambda cfg: FakeProtocol("second"))
    assert reg.build_protocol("p", {}).name == "second"


def test_factory_errors_propagate():
    def failing(cfg):
        raise ValueError("bad config")

    reg = ProtocolRegistry()
    reg.register_protocol("broken", failing)
    with pytest.raises(ValueError, match="bad config"):
        reg.build_protocol("broken", {})


def test_global_registry_is_shared():
    reg = global_registry()
    assert reg is global_registry()
    reg.register_protocol("registry-test-proto", lambda cfg: FakeProtocol(cfg["label"]))
    assert global_registry().build_protocol("registry-test-proto", {"label": "x"}).name == "x"