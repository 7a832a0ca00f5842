"""
System prompt assembly: base prompt, then skills, then memory.
"""

from typing import Iterable
from xml.sax.saxutils import quoteattr, escape

from agent.skills import SkillEntry


def build_skills_block(skills: Iterable[SkillEntry]) -> str:
    skills = list(skills)
    if not skills:
        return ""

    lines = [
        "You also have access to skills. When a skill applies to the task, "
        "follow its instructions.",
        "",
        "<available_skills>",
    ]
    for skill in skills:
        lines.append(f"  <skill name={quoteattr(skill.name)} command={quoteattr(skill.command)}>")
        lines.append(f"    <description>{escape(skill.description)}</description>")
        lines.append("  </skill>")
    lines.append("</available_skills>")
    return "\n".join(lines)


def build_system_prompt(base_prompt: str, skills: Iterable[SkillEntry], memory_context: str) -> str:
    """Join the non-empty parts in fixed order: base, skills, memory."""
    parts = [base_prompt.strip() if base_prompt else "", build_skills_block(skills), memory_context.strip()]
    return "\n\n".join(part for part in parts if part)
