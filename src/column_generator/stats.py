from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable


@dataclass(frozen=True)
class UsageTotals:
    cost: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: "UsageTotals") -> "UsageTotals":
        if not isinstance(other, UsageTotals):
            return NotImplemented
        return UsageTotals(
            cost=self.cost + other.cost,
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )

    @classmethod
    def fold(cls, parts: Iterable["UsageTotals"]) -> "UsageTotals":
        totals = cls()
        for part in parts:
            totals = totals + part
        return totals


@dataclass(frozen=True)
class ColumnResult:
    name: str
    target_fields: tuple[str, ...]
    totals: UsageTotals
    rows_processed: int
    batch_count: int
    elapsed_seconds: float
    unresolved_cells: int = 0

    @property
    def average_cost_per_row(self) -> float | None:
        if self.rows_processed == 0:
            return None
        return self.totals.cost / self.rows_processed


@dataclass(frozen=True)
class RunResult:
    columns: tuple[ColumnResult, ...]
    totals: UsageTotals
    elapsed_seconds: float
    output_path: Path | None = None
    original_headers: tuple[str, ...] = field(default_factory=tuple)
    added_headers: tuple[str, ...] = field(default_factory=tuple)
