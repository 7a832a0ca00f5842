"""
Global model preferences, read from config.yaml.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TEMPERATURE = 0.2
DEFAULT_MAX_ITERATIONS = 200


class ModelPreferences:
    """
    Typed view over the loaded configuration.

    `loader` is called again on reload(), so a long-running daemon picks up
    config edits before each run.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 loader: Optional[Callable[[], Dict[str, Any]]] = None):
        self._loader = loader
        self._config = config if config is not None else (loader() if loader else {})

    def reload(self) -> None:
        if self._loader is not None:
            self._config = self._loader()

    def selected_model(self) -> str:
        return self._config.get("model") or DEFAULT_MODEL

    def temperature(self) -> float:
        try:
            return float(self._config.get("temperature", DEFAULT_TEMPERATURE))
        except (TypeError, ValueError):
            logger.warning("Invalid temperature in config; using %s", DEFAULT_TEMPERATURE)
            return DEFAULT_TEMPERATURE

    def max_iterations(self) -> int:
        try:
            return int(self._config.get("max_iterations", DEFAULT_MAX_ITERATIONS))
        except (TypeError, ValueError):
            logger.warning("Invalid max_iterations in config; using %s", DEFAULT_MAX_ITERATIONS)
            return DEFAULT_MAX_ITERATIONS

    def system_prompt(self) -> str:
        return self._config.get("system_prompt") or ""

    def active_agent(self) -> Optional[str]:
        return self._config.get("active_agent") or None

    def disabled_skills(self) -> List[str]:
        return list((self._config.get("skills") or {}).get("disabled") or [])

    def provider(self) -> Dict[str, Any]:
        return dict(self._config.get("provider") or {})
