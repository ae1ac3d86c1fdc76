"""spark-bridge: local bridge between the browser overlay and the Codex agent."""

__version__ = "0.1.0"
