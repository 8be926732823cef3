"""Agent runtime core: configuration, message bus, plugin registry, LLM pool and ReAct loop."""

__version__ = "0.1.0"