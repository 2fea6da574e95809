"""Configuration, telemetry and other collaborators of the orchestrator."""
