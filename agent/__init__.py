"""Execution side of scheduled runs: sessions, tools, profiles, prompt and loop."""
