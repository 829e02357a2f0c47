"""Application wiring for one command invocation."""
