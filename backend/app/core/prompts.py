import os
from typing import Dict

import structlog
import yaml

logger = structlog.get_logger(__name__)

DEFAULT_PROMPTS_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), "prompts", "prompts.yaml")

class PromptLoader:
    def __init__(self, prompts_path: str = DEFAULT_PROMPTS_PATH):
        self.prompts_path = os.path.abspath(prompts_path)
        self._prompts: Dict[str, str] = {}
        self._load_prompts()

    def _load_prompts(self):
        try:
            with open(self.prompts_path, "r", encoding="utf-8") as f:
                self._prompts = yaml.safe_load(f) or {}
            logger.info("prompts_loaded", count=len(self._prompts), path=self.prompts_path)
        except (OSError, yaml.YAMLError) as e:
            logger.error("prompts_load_failed", path=self.prompts_path, error=str(e))
            self._prompts = {}

    def reload(self):
        """Hot-reload prompts from disk."""
        self._load_prompts()

    def get(self, key: str, **kwargs) -> str:
        """
        Retrieves a prompt by key and formats it with kwargs.
        """
        template = self._prompts.get(key)
        if not template:
            raise KeyError(f"Prompt key '{key}' not found in {self.prompts_path}")

        try:
            return template.format(**kwargs)
        except KeyError as e:
            raise KeyError(f"Missing argument for prompt '{key}': {e}")

# Singleton Instance
prompts = PromptLoader()
