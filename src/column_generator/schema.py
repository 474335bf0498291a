from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


DEFAULT_BATCH_SIZE = 10
DEFAULT_COOLDOWN_MS = 0


class _ColumnSpecBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid", protected_namespaces=())

    model_name: str = Field(alias="modelName", min_length=1)
    prompt: str = Field(min_length=1)
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, alias="batchSize", gt=0)
    cooldown_ms: int = Field(default=DEFAULT_COOLDOWN_MS, alias="cooldown", ge=0)
    plugins: tuple[dict[str, Any], ...] | None = Field(default=None, alias="modelPlugins")
    web_search_options: dict[str, Any] | None = Field(default=None, alias="webSearchOptions")

    @field_validator("batch_size", "cooldown_ms", mode="before")
    @classmethod
    def default_when_null(cls, value: Any, info: ValidationInfo) -> Any:
        # `batchSize:` with no value in YAML loads as None; treat it like an omitted key.
        if value is None:
            return DEFAULT_BATCH_SIZE if info.field_name == "batch_size" else DEFAULT_COOLDOWN_MS
        return value

    @field_validator("plugins", mode="before")
    @classmethod
    def drop_empty_plugins(cls, value: Any) -> Any:
        if value is None or (isinstance(value, (list, tuple)) and len(value) == 0):
            return None
        return value

    @property
    def cooldown_seconds(self) -> float:
        return self.cooldown_ms / 1000.0


class SingleColumnSpec(_ColumnSpecBase):
    kind: Literal["single"] = "single"
    name: str = Field(alias="columnName", min_length=1)

    @property
    def target_fields(self) -> tuple[str, ...]:
        return (self.name,)

    @property
    def display_name(self) -> str:
        return self.name


class GroupColumnSpec(_ColumnSpecBase):
    kind: Literal["group"] = "group"
    group_name: str = Field(alias="groupName", min_length=1)
    columns: tuple[str, ...] = Field(min_length=1)

    @field_validator("columns")
    @classmethod
    def unique_non_empty_columns(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        cleaned = tuple(dict.fromkeys(column.strip() for column in value))
        if any(not column for column in cleaned):
            raise ValueError("group column names must be non-empty")
        return cleaned

    @property
    def target_fields(self) -> tuple[str, ...]:
        return self.columns

    @property
    def display_name(self) -> str:
        return f"{self.group_name} ({len(self.columns)} columns: {', '.join(self.columns)})"


ColumnSpec = Annotated[Union[SingleColumnSpec, GroupColumnSpec], Field(discriminator="kind")]
