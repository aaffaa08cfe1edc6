"""Configuration loading for the onboarding pipeline."""

from __future__ import annotations

import json
import os
from datetime import date, datetime
from pathlib import Path

from onboardlib.constants import DATA_DIR_ENV
from onboardlib.exceptions import ConfigurationError
from onboardlib.models import PipelineConfig

# camelCase names accepted by the control surface, mapped onto dataclass fields.
# Values in milliseconds are converted to seconds.
_CAMEL_ALIASES: dict[str, str] = {
    "batchSize": "batch_size",
    "maxEmailsPerDay": "max_messages_per_day",
    "maxMessagesPerDay": "max_messages_per_day",
    "startDate": "date_range_start",
    "endDate": "date_range_end",
    "autoSyncEnabled": "auto_sync_enabled",
    "targetListName": "target_list_name",
}
_MILLISECOND_ALIASES: dict[str, str] = {
    "delayBetweenBatches": "inter_batch_delay",
    "interBatchDelay": "inter_batch_delay",
}
_DATE_FIELDS = ("date_range_start", "date_range_end")


def _parse_day(value: object, name: str) -> date | None:
    if value is None or isinstance(value, date):
        return value  # type: ignore[return-value]
    if not isinstance(value, str):
        raise ConfigurationError(f"{name} must be an ISO date string, got {value!r}")
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError as exc:
        raise ConfigurationError(f"{name} is not a valid ISO date: {value!r}") from exc


def pipeline_config_from_dict(data: dict) -> PipelineConfig:
    """Build a PipelineConfig from a mapping, merging recognised keys over defaults.

    Unknown keys are ignored. Keys may use the dataclass field names or the
    camelCase names of the control surface (``delayBetweenBatches`` is in
    milliseconds).
    """
    field_names = {f.name for f in PipelineConfig.__dataclass_fields__.values()}
    kwargs: dict[str, object] = {}
    for key, value in data.items():
        if key in field_names:
            kwargs[key] = value
        elif key in _CAMEL_ALIASES:
            kwargs[_CAMEL_ALIASES[key]] = value
        elif key in _MILLISECOND_ALIASES:
            try:
                kwargs[_MILLISECOND_ALIASES[key]] = float(value) / 1000.0
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"{key} must be a number of milliseconds, got {value!r}") from exc

    for name in _DATE_FIELDS:
        if name in kwargs:
            kwargs[name] = _parse_day(kwargs[name], name)

    try:
        return PipelineConfig(**kwargs)  # type: ignore[arg-type]
    except TypeError as exc:
        raise ConfigurationError(f"Invalid pipeline configuration: {exc}") from exc


def load_pipeline_config(config_path: Path | None = None) -> PipelineConfig:
    """Load pipeline configuration from JSON, falling back to defaults.

    Args:
        config_path: Optional path to a JSON object. A missing file yields
            the defaults.

    Returns:
        PipelineConfig populated from the file.

    Raises:
        ConfigurationError: If the file is not a JSON object or a value is
            out of range.
    """
    data: dict = {}
    if config_path is not None and config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as exc:
                raise ConfigurationError(f"{config_path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"{config_path} must contain a JSON object")
    return pipeline_config_from_dict(data)


def resolve_data_dir(data_dir: Path | str | None = None) -> Path:
    """Pick the data directory: explicit argument, then $ONBOARDLIB_DATA_DIR, then ./data."""
    if data_dir is not None:
        return Path(data_dir)
    env_dir = os.environ.get(DATA_DIR_ENV)
    if env_dir:
        return Path(env_dir)
    return Path("data")


def feedback_dir(data_dir: Path) -> Path:
    return data_dir / "feedback"


def training_dir(data_dir: Path) -> Path:
    return data_dir / "training"


def ontology_path(data_dir: Path) -> Path:
    return data_dir / "ontology.json"
