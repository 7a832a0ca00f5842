"""
Skill discovery.

Skills are directories under ~/.agent-scheduler/skills/ containing a
SKILL.md with YAML front matter (name, description, optional command). Only
their metadata goes into the system prompt.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 64
MAX_DESCRIPTION_LENGTH = 1024


def parse_front_matter(content: str) -> Tuple[Dict[str, Any], str]:
    """
    Split a markdown document into its YAML front matter and body.

    Documents without a leading '---' block return ({}, content). A front
    matter block that is not valid YAML, or not a mapping, raises ValueError.
    """
    stripped = content.lstrip()
    if not stripped.startswith("---"):
        return {}, content

    end_match = re.search(r'\n---\s*(\n|$)', stripped[3:])
    if not end_match:
        raise ValueError("front matter has no closing --- delimiter")

    yaml_content = stripped[3:end_match.start() + 3]
    body = stripped[end_match.end() + 3:].lstrip("\r\n")
    try:
        data = yaml.safe_load(yaml_content) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"invalid front matter: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("front matter must be a mapping")
    return data, body


@dataclass(frozen=True)
class SkillEntry:
    name: str
    description: str
    path: Path
    command: str = ""


def _load_skill(skill_md: Path) -> SkillEntry:
    frontmatter, body = parse_front_matter(skill_md.read_text(encoding="utf-8"))
    name = str(frontmatter.get("name") or skill_md.parent.name)[:MAX_NAME_LENGTH]

    description = str(frontmatter.get("description") or "")
    if not description:
        for line in body.strip().split("\n"):
            line = line.strip()
            if line and not line.startswith("#"):
                description = line
                break
    if len(description) > MAX_DESCRIPTION_LENGTH:
        description = description[:MAX_DESCRIPTION_LENGTH - 3] + "..."

    command = str(frontmatter.get("command") or f"/{name}")
    return SkillEntry(name=name, description=description, path=skill_md, command=command)


class SkillRepository:
    def __init__(self, skills_dir: Path, disabled: Iterable[str] = ()):
        self.skills_dir = Path(skills_dir)
        self.disabled = set(disabled)
        self._skills: List[SkillEntry] = []

    def reload(self) -> List[SkillEntry]:
        skills = {}
        if self.skills_dir.is_dir():
            for skill_md in sorted(self.skills_dir.rglob("SKILL.md")):
                if any(part.startswith(".") for part in skill_md.relative_to(self.skills_dir).parts):
                    continue
                try:
                    skill = _load_skill(skill_md)
                except (OSError, ValueError) as e:
                    logger.warning("Skipping skill %s: %s", skill_md, e)
                    continue
                skills[skill.name] = skill
        self._skills = sorted(skills.values(), key=lambda s: s.name)
        return list(self._skills)

    def enabled_skills(self, only: Optional[Iterable[str]] = None) -> List[SkillEntry]:
        """Skills not disabled in config, optionally narrowed to the names in `only`."""
        wanted = set(only) if only is not None else None
        return [
            s for s in self._skills
            if s.name not in self.disabled and (wanted is None or s.name in wanted)
        ]
