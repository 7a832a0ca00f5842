"""Command line and configuration for agent-scheduler."""
