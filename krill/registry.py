"""Registry of ingress protocol plugin factories."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Mapping, Protocol, runtime_checkable

from krill.bus import LocalBus


@runtime_checkable
class ProtocolPlugin(Protocol):
    """An ingress adapter. ``start`` must not block."""

    @property
    def name(self) -> str: ...

    def start(self, bus: LocalBus, log: logging.Logger) -> None: ...

    def stop(self) -> None: ...


ProtocolFactory = Callable[[dict[str, Any]], ProtocolPlugin]


class UnknownProtocolError(LookupError):
    """No factory is registered under the requested name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"unknown protocol plugin {name!r} (is it registered?)")
        self.name = name


class ProtocolRegistry:
    """Thread-safe map from protocol names to their factories."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._protocols: dict[str, ProtocolFactory] = {}

    def register_protocol(self, name: str, factory: ProtocolFactory) -> None:
        """Register ``factory`` under ``name``, replacing any earlier one."""
        with self._lock:
            self._protocols[name] = factory

    def build_protocol(self, name: str, cfg: dict[str, Any]) -> ProtocolPlugin:
        """Build the plugin registered under ``name`` from ``cfg``."""
        with self._lock:
            factory = self._protocols.get(name)
        if factory is None:
            raise UnknownProtocolError(name)
        return factory(cfg)


_GLOBAL = ProtocolRegistry()


def global_registry() -> ProtocolRegistry:
    """Return the process-wide plugin registry."""
    return _GLOBAL


def copy_config_map(cfg: Mapping[str, Any] | None) -> dict[str, Any]:
    """Return a fresh top-level copy of a plugin configuration map."""
    return dict(cfg) if cfg else {}