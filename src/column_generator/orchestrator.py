"""Sequence column runs over one shared row set and persist the result."""

import asyncio
import logging
import time
from collections.abc import Sequence

from .batch import DEFAULT_MAX_RETRIES, CompletionInvoker, Row, SleepFn
from .column_driver import CheckpointSink, run_column
from .config import GeneratorConfig
from .schema import ColumnSpec
from .stats import ColumnResult, RunResult, UsageTotals
from .tabular import CsvCheckpointWriter, load_rows, progress_path_for, row_headers, write_rows


logger = logging.getLogger(__name__)


async def run_columns(
    columns: Sequence[ColumnSpec],
    rows: Sequence[Row],
    invoker: CompletionInvoker,
    *,
    checkpoint: CheckpointSink | None = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    sleep: SleepFn = asyncio.sleep,
    show_progress: bool = False,
) -> RunResult:
    """Run every column to completion, in order. A fatal column error stops the run."""
    start_time = time.perf_counter()
    column_results: list[ColumnResult] = []

    for position, column in enumerate(columns, start=1):
        # Later columns may template on fields written by earlier ones, so columns never overlap.
        column_result = await run_column(
            column,
            rows,
            invoker,
            checkpoint=checkpoint,
            max_retries=max_retries,
            sleep=sleep,
            position=position,
            total_columns=len(columns),
            show_progress=show_progress,
        )
        column_results.append(column_result)

    return RunResult(
        columns=tuple(column_results),
        totals=UsageTotals.fold(result.totals for result in column_results),
        elapsed_seconds=time.perf_counter() - start_time,
    )


async def generate_columns(
    config: GeneratorConfig,
    invoker: CompletionInvoker,
    *,
    sleep: SleepFn = asyncio.sleep,
    show_progress: bool = False,
) -> RunResult:
    """Load the input table, generate every configured column and write the output table."""
    start_time = time.perf_counter()

    if not config.input_path.exists():
        raise FileNotFoundError(f"Input file not found: {config.input_path}")
    rows = load_rows(config.input_path)
    if not rows:
        raise ValueError(f"Input CSV is empty: {config.input_path}")

    original_headers = row_headers(rows[:1])
    logger.info("  ✓ Loaded %d rows", len(rows))
    logger.info("  ✓ Original columns (%d): %s", len(original_headers), ", ".join(original_headers))
    logger.info("  ➜ Will generate columns (%d): %s", len(config.columns), ", ".join(column.display_name for column in config.columns))

    checkpoint = CsvCheckpointWriter(progress_path_for(config.output_path))
    run_result = await run_columns(
        config.columns,
        rows,
        invoker,
        checkpoint=checkpoint,
        max_retries=config.max_retries,
        sleep=sleep,
        show_progress=show_progress,
    )

    added_headers = [field_name for field_name in config.target_fields if field_name not in original_headers]
    headers = original_headers + added_headers
    write_rows(config.output_path, rows, headers)
    logger.info("  ✓ Output written to: %s", config.output_path)
    logger.info(
        "  ✓ Total columns: %d (%d original + %d new)",
        len(headers),
        len(original_headers),
        len(added_headers),
    )

    return RunResult(
        columns=run_result.columns,
        totals=run_result.totals,
        elapsed_seconds=time.perf_counter() - start_time,
        output_path=config.output_path,
        original_headers=tuple(original_headers),
        added_headers=tuple(added_headers),
    )
