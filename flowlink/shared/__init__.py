"""Models and helpers shared by the engine, adapters and CLI."""
