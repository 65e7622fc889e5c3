"""
Configuration management and loading.

Handles pipeline settings from YAML and the generation API credential from
the environment.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from menu_image_guard.core.errors import MisconfigurationError
from menu_image_guard.storage.db import DEFAULT_DB_PATH

API_KEY_ENV_VAR = "GEMINI_API_KEY"

# Markers left in credentials copied from templates
_PLACEHOLDER_MARKERS = ("your_", "YOUR_")


@dataclass(frozen=True)
class BudgetConfig:
    """Global spend cap for image generation."""
    unit_cost: Decimal = Decimal("0.04")
    cap: Decimal = Decimal("25.00")

    def __post_init__(self):
        """Validate budget values are positive."""
        if self.unit_cost <= 0:
            raise ValueError("unit_cost must be > 0")
        if self.cap <= 0:
            raise ValueError("cap must be > 0")


@dataclass(frozen=True)
class GenerationConfig:
    """Settings for the Gemini image generation endpoint."""
    api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.5-flash-image"
    aspect_ratio: str = "4:3"
    timeout_seconds: float = 40.0

    def __post_init__(self):
        if not self.api_base:
            raise ValueError("api_base is required")
        if not self.model:
            raise ValueError("model is required")
        if self.timeout_seconds <= 0:
            raise ValueError("generation timeout_seconds must be > 0")

    @property
    def endpoint(self) -> str:
        return f"{self.api_base.rstrip('/')}/models/{self.model}:generateContent"


@dataclass(frozen=True)
class StorageConfig:
    """Settings for the public object storage bucket."""
    bucket: Optional[str] = None
    prefix: str = "menu-images"
    public_base: str = "https://storage.googleapis.com"
    timeout_seconds: float = 15.0

    def __post_init__(self):
        if not self.prefix or self.prefix.strip("/") != self.prefix:
            raise ValueError("prefix must be non-empty without leading or trailing '/'")
        if self.timeout_seconds <= 0:
            raise ValueError("storage timeout_seconds must be > 0")


@dataclass(frozen=True)
class PipelineConfig:
    """Complete pipeline configuration.

    ``request_timeout_seconds`` is the per-request deadline of the serving
    layer. It is enforced by whoever serves requests; the controller only
    logs overruns. httpx applies the generation timeout to each network
    phase separately, not to the whole call.
    """
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    request_timeout_seconds: float = 60.0
    db_path: str = DEFAULT_DB_PATH

    def __post_init__(self):
        """The request deadline must leave room for generation plus upload."""
        budgeted = self.generation.timeout_seconds + self.storage.timeout_seconds
        if self.request_timeout_seconds <= budgeted:
            raise ValueError(
                f"request_timeout_seconds ({self.request_timeout_seconds}) must be greater "
                f"than generation + storage timeouts ({budgeted})"
            )

    @classmethod
    def default(cls) -> "PipelineConfig":
        return cls()


_SECTION_KEYS = {
    'budget': {'unit_cost', 'cap'},
    'generation': {'api_base', 'model', 'aspect_ratio', 'timeout_seconds'},
    'storage': {'bucket', 'prefix', 'public_base', 'timeout_seconds'},
    'pipeline': {'request_timeout_seconds', 'db_path'},
}


def load_pipeline_config(path: str) -> PipelineConfig:
    """Load and validate pipeline configuration from YAML file.

    Every section is optional and falls back to defaults, but unknown keys
    are rejected so a typo can't silently change the budget cap.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated PipelineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Pipeline config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    budget_data = sections['budget']
    budget = BudgetConfig(**{
        key: _parse_decimal(budget_data[key], f"budget.{key}")
        for key in ('unit_cost', 'cap') if key in budget_data
    })

    generation_data = dict(sections['generation'])
    if 'timeout_seconds' in generation_data:
        generation_data['timeout_seconds'] = _parse_seconds(
            generation_data['timeout_seconds'], "generation.timeout_seconds"
        )
    generation = GenerationConfig(**generation_data)

    storage_data = dict(sections['storage'])
    if 'timeout_seconds' in storage_data:
        storage_data['timeout_seconds'] = _parse_seconds(
            storage_data['timeout_seconds'], "storage.timeout_seconds"
        )
    storage = StorageConfig(**storage_data)

    pipeline_data: Dict[str, Any] = dict(sections['pipeline'])
    if 'request_timeout_seconds' in pipeline_data:
        pipeline_data['request_timeout_seconds'] = _parse_seconds(
            pipeline_data['request_timeout_seconds'], "pipeline.request_timeout_seconds"
        )

    return PipelineConfig(
        budget=budget,
        generation=generation,
        storage=storage,
        **pipeline_data
    )


def resolve_api_key(environ: Optional[Mapping[str, str]] = None) -> str:
    """Read the Gemini API key from the environment.

    Args:
        environ: Mapping to read from (defaults to ``os.environ``)

    Returns:
        The configured API key

    Raises:
        MisconfigurationError: If the key is missing or still a template placeholder
    """
    env = os.environ if environ is None else environ
    api_key = env.get(API_KEY_ENV_VAR, "").strip()
    if not api_key or any(marker in api_key for marker in _PLACEHOLDER_MARKERS):
        raise MisconfigurationError(
            f"Gemini API key not configured. Please set the {API_KEY_ENV_VAR} environment variable."
        )
    return api_key


def _section(raw_config: Dict, name: str) -> Dict:
    """Return a validated config section, empty if absent."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _parse_decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        # str() first so 0.04 stays 0.04 instead of its binary expansion
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")


def _parse_seconds(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number of seconds")
    return float(value)
