"""flowrunner - flow execution engine with sandbox, live and durable modes."""

__version__ = "1.0.0"
