import asyncio
import json
import logging
import time
from collections.abc import Sequence
from typing import Protocol

from tqdm import tqdm

from .batch import DEFAULT_MAX_RETRIES, CompletionInvoker, Row, SleepFn, process_batch
from .responses import UNDETECTABLE, is_unresolved
from .schema import ColumnSpec, GroupColumnSpec, SingleColumnSpec
from .stats import ColumnResult, UsageTotals
from .templates import template_fields


logger = logging.getLogger(__name__)

RULE_WIDTH = 80


class CheckpointSink(Protocol):
    def write(self, rows: Sequence[Row]) -> None: ...


def batch_ranges(total_rows: int, batch_size: int) -> list[range]:
    if batch_size <= 0:
        raise ValueError("batch_size must be > 0.")
    return [range(start, min(start + batch_size, total_rows)) for start in range(0, total_rows, batch_size)]


def _column_kind(column: ColumnSpec) -> str:
    if isinstance(column, GroupColumnSpec):
        return "Column Group"
    if isinstance(column, SingleColumnSpec):
        return "Column"
    raise TypeError(f"Unsupported column specification: {type(column).__name__}")


def _log_column_header(column: ColumnSpec, position: int, total_columns: int, total_rows: int) -> None:
    logger.info("")
    logger.info("=" * RULE_WIDTH)
    logger.info('%s %d/%d: "%s"', _column_kind(column), position, total_columns, column.display_name)
    logger.info("=" * RULE_WIDTH)
    logger.info("Model:      %s", column.model_name)
    logger.info("Batch size: %d", column.batch_size)
    logger.info("Cooldown:   %dms", column.cooldown_ms)
    if column.plugins:
        logger.info("Plugins:    %s", json.dumps(list(column.plugins)))
    if column.web_search_options:
        logger.info("Web Search: %s", json.dumps(column.web_search_options))
    logger.info("Total rows: %d", total_rows)


def _warn_unknown_placeholders(column: ColumnSpec, rows: Sequence[Row]) -> None:
    known_fields = {field_name for row in rows for field_name in row}
    missing_fields = [field_name for field_name in template_fields(column.prompt) if field_name not in known_fields]
    if missing_fields:
        logger.warning(
            "  ⚠ Prompt placeholders not found in any row (left unfilled): %s",
            ", ".join(missing_fields),
        )


def _log_column_summary(result: ColumnResult, column: ColumnSpec, total_rows: int) -> None:
    name = column.group_name if isinstance(column, GroupColumnSpec) else column.name
    totals = result.totals
    logger.info("")
    logger.info("─" * RULE_WIDTH)
    logger.info('%s "%s" Summary:', _column_kind(column), name)
    logger.info("  Total time:     %.2fs", result.elapsed_seconds)
    if total_rows:
        logger.info("  Avg per row:    %.0fms", result.elapsed_seconds * 1000 / total_rows)
    logger.info("  Rows processed: %d/%d", result.rows_processed, total_rows)
    if result.unresolved_cells:
        logger.info("  Unresolved:     %d cell(s) set to %s", result.unresolved_cells, UNDETECTABLE)
    logger.info(
        "  Total tokens:   %s (%s prompt + %s completion)",
        f"{totals.total_tokens:,}",
        f"{totals.prompt_tokens:,}",
        f"{totals.completion_tokens:,}",
    )
    if totals.cost > 0:
        logger.info("  Total cost:     $%.8f", totals.cost)
        if result.average_cost_per_row is not None:
            logger.info("  Avg cost/row:   $%.8f", result.average_cost_per_row)
    logger.info("─" * RULE_WIDTH)


async def run_column(
    column: ColumnSpec,
    rows: Sequence[Row],
    invoker: CompletionInvoker,
    *,
    checkpoint: CheckpointSink | None = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    sleep: SleepFn = asyncio.sleep,
    position: int = 1,
    total_columns: int = 1,
    show_progress: bool = False,
) -> ColumnResult:
    """Run one column over every row, batch by batch, checkpointing after each batch."""
    total_rows = len(rows)
    ranges = batch_ranges(total_rows, column.batch_size)
    _log_column_header(column, position, total_columns, total_rows)
    _warn_unknown_placeholders(column, rows)

    totals = UsageTotals()
    rows_processed = 0
    start_time = time.perf_counter()

    with tqdm(total=total_rows, desc=column.display_name, unit="row", disable=not show_progress, leave=False) as progress_bar:
        for batch_number, batch_range in enumerate(ranges, start=1):
            batch_start_time = time.perf_counter()
            logger.info("")
            logger.info(
                "  Batch %d/%d (rows %d-%d) - processing %d rows in parallel...",
                batch_number,
                len(ranges),
                batch_range.start + 1,
                batch_range.stop,
                len(batch_range),
            )

            successes = await process_batch(
                rows,
                batch_range,
                column,
                invoker,
                max_retries=max_retries,
                sleep=sleep,
            )

            batch_totals = UsageTotals.fold(success.usage for success in successes)
            totals = totals + batch_totals
            rows_processed += len(successes)
            progress_bar.update(len(successes))

            logger.info(
                "  ✓ Completed in %.2fs | Success: %d/%d",
                time.perf_counter() - batch_start_time,
                rows_processed,
                batch_range.stop,
            )
            logger.info(
                "    Batch tokens: %s | Batch cost: $%.8f",
                f"{batch_totals.total_tokens:,}",
                batch_totals.cost,
            )
            logger.info("    Running total: %s tokens | $%.8f", f"{totals.total_tokens:,}", totals.cost)

            if checkpoint is not None:
                try:
                    checkpoint.write(rows)
                except OSError as write_error:
                    logger.warning("    ⚠ Failed to write progress file: %s", write_error)

            if batch_range.stop < total_rows and column.cooldown_ms > 0:
                logger.info("  ⏸  Cooling down for %dms...", column.cooldown_ms)
                await sleep(column.cooldown_seconds)

    result = ColumnResult(
        name=column.display_name,
        target_fields=column.target_fields,
        totals=totals,
        rows_processed=rows_processed,
        batch_count=len(ranges),
        elapsed_seconds=time.perf_counter() - start_time,
        unresolved_cells=sum(
            is_unresolved(row.get(field_name)) for row in rows for field_name in column.target_fields
        ),
    )
    _log_column_summary(result, column, total_rows)
    return result
