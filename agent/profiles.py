"""
Agent profiles and run configuration.

A profile is an AGENT.md file: YAML front matter with the profile's
settings, followed by the system prompt as the markdown body. User profiles
live in ~/.agent-scheduler/agents/<name>/AGENT.md and override the bundled
"main" profile of the same name.

resolve_run_config() applies the override chain for one run: a value set
on the profile wins, otherwise the global preference is used.
"""

import logging
import re
import sys
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from agent.preferences import ModelPreferences
from agent.skills import parse_front_matter

logger = logging.getLogger(__name__)

MAIN_AGENT = "main"

# Iteration caps at or above this value mean "no cap"
MAX_ITERATIONS_SENTINEL = 500
UNBOUNDED_ITERATIONS = sys.maxsize

MAX_NAME_LENGTH = 64
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")


class ProfileSource(Enum):
    BUNDLED = "bundled"
    USER = "user"


@dataclass(frozen=True)
class AgentProfile:
    name: str
    description: str
    system_prompt: str = ""
    model: Optional[str] = None
    allowed_tools: Optional[List[str]] = None
    enabled_skills: Optional[List[str]] = None
    temperature: Optional[float] = None
    max_iterations: Optional[int] = None
    source: ProfileSource = ProfileSource.USER
    file_path: Optional[Path] = None


BUNDLED_MAIN = AgentProfile(
    name=MAIN_AGENT,
    description="General-purpose assistant",
    source=ProfileSource.BUNDLED,
)


def _as_list(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        value = [v for v in value.strip("[] ").split(",")]
    if not isinstance(value, list):
        return None
    return [str(v).strip().strip("\"'") for v in value if str(v).strip()]


def parse_agent_profile(content: str, expected_name: Optional[str] = None) -> AgentProfile:
    """
    Parse an AGENT.md document.

    Raises ValueError if the front matter is missing or has no name or
    description. Out-of-range temperature (0-2) or max-iterations (1-500)
    values are logged and ignored.
    """
    if not content.lstrip().startswith("---"):
        raise ValueError("AGENT.md must start with ---")
    frontmatter, body = parse_front_matter(content)

    name = str(frontmatter.get("name") or "").strip()
    description = str(frontmatter.get("description") or "").strip()
    if not name:
        raise ValueError("Agent name is required")
    if not description:
        raise ValueError("Agent description is required")

    if len(name) > MAX_NAME_LENGTH:
        logger.warning("Agent name '%s' exceeds %d characters", name, MAX_NAME_LENGTH)
    if not NAME_PATTERN.match(name) or "--" in name:
        logger.warning("Agent name '%s' is not lowercase a-z, 0-9 and single hyphens", name)
    if expected_name is not None and name != expected_name:
        logger.warning("Agent name '%s' does not match its directory '%s'", name, expected_name)

    temperature = None
    raw = frontmatter.get("temperature")
    if raw is not None:
        try:
            value = float(raw)
        except (TypeError, ValueError):
            value = None
        if value is not None and 0.0 <= value <= 2.0:
            temperature = value
        else:
            logger.warning("Invalid temperature value '%s' (must be 0.0-2.0)", raw)

    max_iterations = None
    raw = frontmatter.get("max-iterations")
    if raw is not None:
        try:
            value = int(raw)
        except (TypeError, ValueError):
            value = None
        if value is not None and 1 <= value <= MAX_ITERATIONS_SENTINEL:
            max_iterations = value
        else:
            logger.warning("Invalid max-iterations value '%s' (must be 1-%d)", raw, MAX_ITERATIONS_SENTINEL)

    model = frontmatter.get("model")
    return AgentProfile(
        name=name,
        description=description,
        system_prompt=body.strip(),
        model=str(model) if model else None,
        allowed_tools=_as_list(frontmatter.get("allowed-tools")),
        enabled_skills=_as_list(frontmatter.get("enabled-skills")),
        temperature=temperature,
        max_iterations=max_iterations,
    )


class AgentProfileRepository:
    def __init__(self, agents_dir: Path):
        self.agents_dir = Path(agents_dir)
        self._profiles: Dict[str, AgentProfile] = {MAIN_AGENT: BUNDLED_MAIN}

    def reload(self) -> List[AgentProfile]:
        profiles = {MAIN_AGENT: BUNDLED_MAIN}
        if self.agents_dir.is_dir():
            for agent_md in sorted(self.agents_dir.glob("*/AGENT.md")):
                try:
                    profile = parse_agent_profile(
                        agent_md.read_text(encoding="utf-8"),
                        expected_name=agent_md.parent.name,
                    )
                except (OSError, ValueError) as e:
                    logger.warning("Skipping agent profile %s: %s", agent_md, e)
                    continue
                profiles[profile.name] = replace(profile, source=ProfileSource.USER, file_path=agent_md)
        self._profiles = profiles
        return self.all()

    def all(self) -> List[AgentProfile]:
        """Profiles with "main" first, then by name."""
        return sorted(self._profiles.values(), key=lambda p: (p.name != MAIN_AGENT, p.name))

    def find_by_name(self, name: str) -> Optional[AgentProfile]:
        return self._profiles.get(name)

    def resolve(self, name: Optional[str]) -> AgentProfile:
        """The named profile if it exists, otherwise "main"."""
        if name:
            profile = self.find_by_name(name)
            if profile is not None:
                return profile
            logger.warning("Agent profile '%s' not found; using '%s'", name, MAIN_AGENT)
        return self._profiles.get(MAIN_AGENT, BUNDLED_MAIN)


# =============================================================================
# Run configuration
# =============================================================================

@dataclass(frozen=True)
class RunConfig:
    model: str
    temperature: float
    max_iterations: int
    system_prompt: str
    allowed_tools: Optional[List[str]] = None
    enabled_skills: Optional[List[str]] = None


def effective_max_iterations(value: int) -> int:
    return UNBOUNDED_ITERATIONS if value >= MAX_ITERATIONS_SENTINEL else value


def resolve_run_config(profile: Optional[AgentProfile], preferences: ModelPreferences) -> RunConfig:
    """Profile value when set, else global preference, for each setting."""
    model = (profile.model if profile else None) or preferences.selected_model()
    temperature = profile.temperature if profile and profile.temperature is not None else preferences.temperature()
    max_iterations = (
        profile.max_iterations if profile and profile.max_iterations is not None
        else preferences.max_iterations()
    )
    system_prompt = (profile.system_prompt if profile else "") or preferences.system_prompt()
    return RunConfig(
        model=model,
        temperature=temperature,
        max_iterations=effective_max_iterations(max_iterations),
        system_prompt=system_prompt,
        allowed_tools=profile.allowed_tools if profile else None,
        enabled_skills=profile.enabled_skills if profile else None,
    )
