from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Mapping, Sequence

import pandas as pd


_CSV_SUFFIX = re.compile(r"\.csv$", re.IGNORECASE)


def load_rows(path: str | Path) -> list[dict[str, str]]:
    """Read a CSV into row dicts, keeping every cell as a string (empty cells stay empty)."""
    frame = pd.read_csv(Path(path), dtype=str, keep_default_na=False)
    return frame.to_dict(orient="records")


def row_headers(rows: Iterable[Mapping[str, str]]) -> list[str]:
    """Field names in first-seen order; the first row's fields always come first."""
    return list(dict.fromkeys(field_name for row in rows for field_name in row))


def write_rows(path: str | Path, rows: Sequence[Mapping[str, str]], headers: Sequence[str] | None = None) -> Path:
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    columns = list(headers) if headers is not None else row_headers(rows)
    frame = pd.DataFrame.from_records(list(rows), columns=columns)
    frame.to_csv(output_path, index=False, na_rep="")
    return output_path


def progress_path_for(output_path: str | Path) -> Path:
    output_path = Path(output_path)
    if _CSV_SUFFIX.search(output_path.name):
        return output_path.with_name(_CSV_SUFFIX.sub(".progress", output_path.name))
    return output_path.with_name(output_path.name + ".progress")


class CsvCheckpointWriter:
    """Overwrites a side file with the full row set after every batch."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.write_count = 0

    def write(self, rows: Sequence[Mapping[str, str]]) -> None:
        write_rows(self.path, rows)
        self.write_count += 1
