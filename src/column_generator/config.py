import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import TypeAdapter, ValidationError

from .batch import DEFAULT_MAX_RETRIES
from .model_client import (
    DEFAULT_API_BASE_URL,
    DEFAULT_APP_REFERER,
    DEFAULT_APP_TITLE,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
)
from .schema import ColumnSpec


COLUMN_SPEC_ADAPTER = TypeAdapter(ColumnSpec)

REQUIRED_CONFIG_FIELDS = ("inputFileName", "outputFileName", "columns")


@dataclass(frozen=True)
class GeneratorConfig:
    input_path: Path
    output_path: Path
    columns: tuple[ColumnSpec, ...]
    max_retries: int
    request_timeout_seconds: float
    api_base_url: str
    app_referer: str
    app_title: str

    @property
    def target_fields(self) -> list[str]:
        return list(dict.fromkeys(field_name for column in self.columns for field_name in column.target_fields))


DEFAULT_CONFIG = {
    "maxRetries": DEFAULT_MAX_RETRIES,
    "requestTimeoutSeconds": DEFAULT_REQUEST_TIMEOUT_SECONDS,
    "apiBaseUrl": DEFAULT_API_BASE_URL,
    "appReferer": DEFAULT_APP_REFERER,
    "appTitle": DEFAULT_APP_TITLE,
}


def _load_dict_from_file(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        raise ValueError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()
    raw_text = config_path.read_text(encoding="utf-8")

    if suffix in {".yaml", ".yml"}:
        loaded = yaml.safe_load(raw_text)
    elif suffix == ".json":
        loaded = json.loads(raw_text)
    else:
        raise ValueError(f"Unsupported config format: {config_path}")

    if not isinstance(loaded, dict):
        raise ValueError("Config file must contain a JSON/YAML object.")
    return loaded


def _format_validation_error(error: ValidationError) -> str:
    messages = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"] if part not in {"single", "group"})
        messages.append(f"{location}: {detail['msg']}" if location else detail["msg"])
    return "; ".join(messages)


def parse_column_spec(entry: Any, position: int) -> ColumnSpec:
    """Validate one entry of ``columns``. ``position`` is 1-based and only used in error messages."""
    if not isinstance(entry, dict):
        raise ValueError(f"Column {position} must be an object.")

    if "group" in entry:
        if len(entry) != 1 or not isinstance(entry["group"], dict):
            raise ValueError(f"Column {position} (grouped) must contain only a 'group' object.")
        payload = {**entry["group"], "kind": "group"}
        required_hint = "groupName, modelName, prompt, columns array"
    else:
        payload = {**entry, "kind": "single"}
        required_hint = "columnName, modelName, prompt"

    try:
        return COLUMN_SPEC_ADAPTER.validate_python(payload)
    except ValidationError as validation_error:
        variant = " (grouped)" if payload["kind"] == "group" else ""
        raise ValueError(
            f"Column {position}{variant} is invalid (required fields: {required_hint}): "
            + _format_validation_error(validation_error)
        ) from validation_error


def _resolve_path(raw_value: Any) -> Path:
    # Relative paths are taken from the working directory the run starts in.
    return Path(str(raw_value)).expanduser().resolve()


def load_config(config_path: Path) -> GeneratorConfig:
    user_config = _load_dict_from_file(config_path)

    missing_fields = [field_name for field_name in REQUIRED_CONFIG_FIELDS if not user_config.get(field_name)]
    if missing_fields:
        raise ValueError(
            "Invalid configuration. Required fields: "
            + ", ".join(REQUIRED_CONFIG_FIELDS)
            + f" (missing: {', '.join(missing_fields)})"
        )

    merged = dict(DEFAULT_CONFIG)
    merged.update({key: value for key, value in user_config.items() if value is not None})

    raw_columns = merged["columns"]
    if not isinstance(raw_columns, list):
        raise ValueError("Config field 'columns' must be a list.")
    columns = tuple(parse_column_spec(entry, position) for position, entry in enumerate(raw_columns, start=1))

    max_retries = int(merged["maxRetries"])
    if max_retries < 0:
        raise ValueError("maxRetries must be >= 0.")

    request_timeout_seconds = float(merged["requestTimeoutSeconds"])
    if request_timeout_seconds <= 0:
        raise ValueError("requestTimeoutSeconds must be > 0.")

    return GeneratorConfig(
        input_path=_resolve_path(merged["inputFileName"]),
        output_path=_resolve_path(merged["outputFileName"]),
        columns=columns,
        max_retries=max_retries,
        request_timeout_seconds=request_timeout_seconds,
        api_base_url=str(merged["apiBaseUrl"]),
        app_referer=str(merged["appReferer"]),
        app_title=str(merged["appTitle"]),
    )
