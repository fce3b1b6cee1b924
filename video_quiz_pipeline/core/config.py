"""Configuration loader for the quiz generation pipeline."""

from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .types import GenerationConfig, ProviderConfig

DEFAULT_SETTINGS: dict[str, Any] = {
    "providers": {
        "preferred": "openai",
        "fallback": "gemini",
        "retry_attempts": 3,
        "retry_delay_ms": 1000,
        "openai": {"model": "gpt-4o-2024-08-06", "api_key_env": "OPENAI_API_KEY"},
        "gemini": {"model": "gemini-2.5-flash", "api_key_env": "GEMINI_API_KEY"},
    },
    "generation": {
        "multiple-choice": {"temperature": 0.6, "max_output_tokens": 4096, "top_k": 40, "top_p": 0.9},
        "true-false": {"temperature": 0.5, "max_output_tokens": 1536, "top_k": 30, "top_p": 0.8},
        "matching": {"temperature": 0.7, "max_output_tokens": 2048, "top_k": 40, "top_p": 0.9},
        "sequencing": {"temperature": 0.5, "max_output_tokens": 2048, "top_k": 35, "top_p": 0.8},
        "hotspot": {
            "temperature": 0.1,
            "max_output_tokens": 8192,
            "top_k": 1,
            "top_p": 0.8,
            "model": "gemini-2.5-pro",
        },
        "planning": {
            "temperature": 0.7,
            "max_output_tokens": 65535,
            "top_k": 40,
            "top_p": 0.95,
            "model": "gemini-2.5-flash",
        },
        "verification": {
            "temperature": 0.3,
            "max_output_tokens": 3072,
            "top_k": 10,
            "top_p": 0.8,
            "model": "gemini-2.5-flash",
        },
    },
    "quality_thresholds": {
        "minimum_overall_score": 75,
        "minimum_dimension_score": 60,
        "required_confidence": 0.8,
        "max_recommendations": 3,
    },
    "pipeline": {
        "max_questions": 10,
        "difficulty_level": "intermediate",
        "context_window_seconds": 30,
        "max_concurrency": 0,
        "verification_delay_ms": 500,
        "hotspot_jitter_ms": [500, 1500],
        "hotspot_attempts": 3,
        "hotspot_retry_delay_ms": 1000,
        "strict_hotspot_reconciliation": False,
        "question_distribution": {
            "multiple-choice": 0.4,
            "true-false": 0.2,
            "hotspot": 0.2,
            "matching": 0.1,
            "sequencing": 0.1,
        },
    },
}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        elif value is not None:
            merged[key] = value
    return merged


class PipelineConfigLoader:
    """Loads pipeline settings from config/pipeline.yaml over built-in defaults."""

    def __init__(self, config_path: Optional[Path] = None) -> None:
        if config_path is None:
            env_path = os.environ.get("VIDEO_QUIZ_CONFIG", "").strip()
            if env_path:
                config_path = Path(env_path)
            else:
                project_root = Path(__file__).parent.parent.parent
                config_path = project_root / "config" / "pipeline.yaml"
        self.config_path = config_path
        self._config: dict[str, Any] | None = None

    def _load_config(self) -> dict[str, Any]:
        if self._config is not None:
            return self._config
        user_config: dict[str, Any] = {}
        if self.config_path.exists():
            with self.config_path.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
            if isinstance(loaded, dict):
                user_config = loaded
        self._config = _merge(DEFAULT_SETTINGS, user_config)
        return self._config

    @property
    def settings(self) -> dict[str, Any]:
        return self._load_config()

    def provider_config(self) -> ProviderConfig:
        """Return provider order, retry policy and credentials, with env overrides applied."""
        providers = self.settings["providers"]
        preferred = os.environ.get("VIDEO_QUIZ_PREFERRED_PROVIDER", "").strip() or providers["preferred"]
        fallback = os.environ.get("VIDEO_QUIZ_FALLBACK_PROVIDER", "").strip() or providers["fallback"]
        models: Dict[str, str] = {}
        api_key_envs: Dict[str, str] = {}
        for name in ("openai", "gemini"):
            entry = providers.get(name) or {}
            models[name] = entry.get("model", "")
            api_key_envs[name] = entry.get("api_key_env", "")
        return ProviderConfig(
            preferred_provider=preferred,
            fallback_provider=fallback,
            retry_attempts=_env_int("VIDEO_QUIZ_RETRY_ATTEMPTS", int(providers["retry_attempts"])),
            retry_delay_ms=_env_int("VIDEO_QUIZ_RETRY_DELAY_MS", int(providers["retry_delay_ms"])),
            models=models,
            api_key_envs=api_key_envs,
        )

    def generation_config(self, task: str) -> GenerationConfig:
        generation = self.settings["generation"]
        if task not in generation:
            raise ValueError(f"Unknown generation task: {task}")
        entry = generation[task]
        return GenerationConfig(
            temperature=float(entry["temperature"]),
            max_output_tokens=int(entry["max_output_tokens"]),
            top_k=int(entry["top_k"]),
            top_p=float(entry["top_p"]),
            model=entry.get("model"),
            model_provider=entry.get("model_provider", "gemini"),
        )

    def quality_thresholds(self) -> dict[str, Any]:
        return dict(self.settings["quality_thresholds"])

    def pipeline_defaults(self) -> dict[str, Any]:
        defaults = copy.deepcopy(self.settings["pipeline"])
        defaults["max_concurrency"] = _env_int("VIDEO_QUIZ_MAX_CONCURRENCY", int(defaults["max_concurrency"]))
        return defaults


# Global instance
pipeline_config = PipelineConfigLoader()
