"""Tests for skills discovery, memory context and system prompt assembly."""

from datetime import date

import pytest

from agent.memory import load_memory_context
from agent.prompt_builder import build_skills_block, build_system_prompt
from agent.skills import SkillRepository, parse_front_matter


def _skill(root, name, content):
    (root / name).mkdir(parents=True)
    (root / name / "SKILL.md").write_text(content)


class TestFrontMatter:
    def test_split(self):
        data, body = parse_front_matter("---\nname: x\n---\n\nBody text")
        assert data == {"name": "x"}
        assert body == "Body text"

    def test_no_front_matter(self):
        assert parse_front_matter("plain") == ({}, "plain")

    def test_unclosed(self):
        with pytest.raises(ValueError):
            parse_front_matter("---\nname: x\n")

    def test_not_a_mapping(self):
        with pytest.raises(ValueError):
            parse_front_matter("---\n- a\n- b\n---\n")


class TestSkillRepository:
    def test_discovery_and_filters(self, tmp_path):
        _skill(tmp_path, "summarize", "---\nname: summarize\ndescription: Summarize text\n---\nSteps")
        _skill(tmp_path, "digest", "# Digest\n\nBuild a morning digest")
        _skill(tmp_path, ".hidden", "---\nname: hidden\ndescription: no\n---\n")
        _skill(tmp_path, "bad", "---\nname: [unclosed\n---\n")

        repo = SkillRepository(tmp_path, disabled=["digest"])
        skills = repo.reload()

        assert [s.name for s in skills] == ["digest", "summarize"]
        digest = skills[0]
        assert digest.description == "Build a morning digest"
        assert digest.command == "/digest"
        assert [s.name for s in repo.enabled_skills()] == ["summarize"]
        assert repo.enabled_skills(only=["other"]) == []
        assert skills[1].path == tmp_path / "summarize" / "SKILL.md"


class TestMemoryContext:
    def test_empty_directory(self, tmp_path):
        assert load_memory_context(tmp_path) == ""

    def test_sections(self, tmp_path):
        (tmp_path / "MEMORY.md").write_text("Prefers metric\n§\nLives in Oslo")
        (tmp_path / "daily").mkdir()
        (tmp_path / "daily" / "2026-03-01.md").write_text("Dentist at 3")
        (tmp_path / "daily" / "2026-02-28.md").write_text("Paid rent")

        context = load_memory_context(tmp_path, today=date(2026, 3, 1))

        assert context.startswith("--- Your Memory ---")
        assert "- Prefers metric\n- Lives in Oslo" in context
        assert "## Today's Memory (2026-03-01)\nDentist at 3" in context
        assert "## Yesterday's Memory (2026-02-28)\nPaid rent" in context
        assert "USER.md" not in context
        assert context.index("Long-term") < context.index("Today's")

    def test_truncation(self, tmp_path):
        (tmp_path / "USER.md").write_text("y" * 5000)
        assert "[...truncated]" in load_memory_context(tmp_path)


class TestSystemPrompt:
    def test_order_and_escaping(self, tmp_path):
        _skill(tmp_path, "s", '---\nname: s\ndescription: "Use <b> & co"\n---\n')
        repo = SkillRepository(tmp_path)
        repo.reload()

        prompt = build_system_prompt("Base prompt", repo.enabled_skills(), "--- Your Memory ---")

        assert prompt.index("Base prompt") < prompt.index("<available_skills>") < prompt.index("Your Memory")
        assert "Use &lt;b&gt; &amp; co" in prompt

    def test_empty_parts_skipped(self):
        assert build_skills_block([]) == ""
        assert build_system_prompt("", [], "") == ""
        assert build_system_prompt("Base", [], "") == "Base"
