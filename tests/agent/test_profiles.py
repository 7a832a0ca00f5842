"""Tests for agent.profiles and agent.preferences."""

import logging

import pytest

from agent.preferences import DEFAULT_MAX_ITERATIONS, DEFAULT_MODEL, ModelPreferences
from agent.profiles import (
    MAIN_AGENT,
    UNBOUNDED_ITERATIONS,
    AgentProfileRepository,
    ProfileSource,
    effective_max_iterations,
    parse_agent_profile,
    resolve_run_config,
)

RESEARCHER = """---
name: researcher
description: Digs through sources
model: gpt-4o
temperature: 0.7
max-iterations: 30
allowed-tools: [web_search, echo]
enabled-skills: summarize
---

You are a careful researcher.
"""


class TestParseAgentProfile:
    def test_full_profile(self):
        profile = parse_agent_profile(RESEARCHER)
        assert profile.name == "researcher"
        assert profile.model == "gpt-4o"
        assert profile.temperature == 0.7
        assert profile.max_iterations == 30
        assert profile.allowed_tools == ["web_search", "echo"]
        assert profile.enabled_skills == ["summarize"]
        assert profile.system_prompt == "You are a careful researcher."

    def test_missing_front_matter(self):
        with pytest.raises(ValueError):
            parse_agent_profile("just a prompt")

    def test_missing_description(self):
        with pytest.raises(ValueError, match="description"):
            parse_agent_profile("---\nname: x\n---\nbody")

    def test_out_of_range_values_are_ignored(self, caplog):
        content = "---\nname: x\ndescription: d\ntemperature: 3\nmax-iterations: 0\n---\n"
        with caplog.at_level(logging.WARNING):
            profile = parse_agent_profile(content)
        assert profile.temperature is None
        assert profile.max_iterations is None
        assert "Invalid temperature" in caplog.text

    def test_bad_name_only_warns(self, caplog):
        with caplog.at_level(logging.WARNING):
            profile = parse_agent_profile("---\nname: Bad_Name\ndescription: d\n---\n")
        assert profile.name == "Bad_Name"
        assert "lowercase" in caplog.text


class TestRepository:
    def test_bundled_main_without_directory(self, tmp_path):
        repo = AgentProfileRepository(tmp_path / "missing")
        repo.reload()
        assert [p.name for p in repo.all()] == [MAIN_AGENT]
        assert repo.resolve(None).source is ProfileSource.BUNDLED

    def test_user_profiles_and_main_override(self, tmp_path):
        (tmp_path / "researcher").mkdir()
        (tmp_path / "researcher" / "AGENT.md").write_text(RESEARCHER)
        (tmp_path / "main").mkdir()
        (tmp_path / "main" / "AGENT.md").write_text("---\nname: main\ndescription: Mine\n---\nCustom main")
        (tmp_path / "broken").mkdir()
        (tmp_path / "broken" / "AGENT.md").write_text("no front matter")

        repo = AgentProfileRepository(tmp_path)
        names = [p.name for p in repo.reload()]

        assert names == ["main", "researcher"]
        main = repo.resolve(MAIN_AGENT)
        assert main.source is ProfileSource.USER
        assert main.system_prompt == "Custom main"

    def test_unknown_name_falls_back_to_main(self, tmp_path):
        repo = AgentProfileRepository(tmp_path)
        repo.reload()
        assert repo.resolve("nobody").name == MAIN_AGENT


class TestRunConfig:
    def test_profile_wins(self):
        prefs = ModelPreferences({"model": "global", "temperature": 0.1, "max_iterations": 50,
                                  "system_prompt": "global prompt"})
        config = resolve_run_config(parse_agent_profile(RESEARCHER), prefs)
        assert config.model == "gpt-4o"
        assert config.temperature == 0.7
        assert config.max_iterations == 30
        assert config.system_prompt == "You are a careful researcher."
        assert config.allowed_tools == ["web_search", "echo"]

    def test_preferences_fill_gaps(self):
        prefs = ModelPreferences({"model": "global", "temperature": 0.1, "max_iterations": 50,
                                  "system_prompt": "global prompt"})
        profile = parse_agent_profile("---\nname: bare\ndescription: d\n---\n")
        config = resolve_run_config(profile, prefs)
        assert (config.model, config.temperature, config.max_iterations) == ("global", 0.1, 50)
        assert config.system_prompt == "global prompt"
        assert config.allowed_tools is None

    def test_sentinel_means_unbounded(self):
        assert effective_max_iterations(499) == 499
        assert effective_max_iterations(500) == UNBOUNDED_ITERATIONS
        config = resolve_run_config(None, ModelPreferences({"max_iterations": 800}))
        assert config.max_iterations == UNBOUNDED_ITERATIONS


class TestPreferences:
    def test_defaults(self):
        prefs = ModelPreferences({})
        assert prefs.selected_model() == DEFAULT_MODEL
        assert prefs.max_iterations() == DEFAULT_MAX_ITERATIONS
        assert prefs.active_agent() is None
        assert prefs.disabled_skills() == []

    def test_invalid_numbers_fall_back(self):
        prefs = ModelPreferences({"temperature": "hot", "max_iterations": "many"})
        assert prefs.temperature() == 0.2
        assert prefs.max_iterations() == DEFAULT_MAX_ITERATIONS

    def test_reload_calls_loader(self):
        configs = iter([{"model": "a"}, {"model": "b"}])
        prefs = ModelPreferences(loader=lambda: next(configs))
        assert prefs.selected_model() == "a"
        prefs.reload()
        assert prefs.selected_model() == "b"
