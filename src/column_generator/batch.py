"""Concurrent per-row processing of one batch, retrying only the rows that failed.

Every row in a batch runs template fill, model call and response distribution
as its own task. After each round the rows that succeeded are done for good;
the rows that failed are retried together after an exponential backoff
(2, 4, 8, ... seconds) until they succeed or the retry ceiling is reached, at
which point the whole batch fails with a summary of the distinct errors.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Hashable, MutableMapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from openai import APIError, OpenAIError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import BatchRetriesExhaustedError, ErrorSignature, ModelResponseError
from .model_client import CompletionResult
from .responses import distribute_response
from .schema import ColumnSpec
from .stats import UsageTotals
from .templates import fill_prompt_template


logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 10
RETRYABLE_ERRORS = (OpenAIError, ModelResponseError)

Row = MutableMapping[str, str]
SleepFn = Callable[[float], Awaitable[Any]]


class CompletionInvoker(Protocol):
    async def complete(
        self,
        model: str,
        prompt: str,
        plugins: Sequence[dict[str, Any]] | None = None,
        web_search_options: dict[str, Any] | None = None,
    ) -> CompletionResult: ...


@dataclass(frozen=True)
class RowSuccess:
    row_index: int
    usage: UsageTotals


@dataclass(frozen=True)
class RowFailure:
    row_index: int
    status: Hashable
    message: str
    response_body: Any = None

    @property
    def signature(self) -> ErrorSignature:
        return (self.status, self.message)


RowOutcome = RowSuccess | RowFailure


class _RoundFailed(Exception):
    def __init__(self, failures: list[RowFailure]):
        self.failures = failures
        super().__init__(f"{len(failures)} row(s) failed")


def describe_error(error: BaseException) -> tuple[Hashable, str, Any]:
    """Return ``(status, message, body)`` for a failed model call.

    Prefers the provider's own error message from the response body over the
    SDK's generic text, and appends provider metadata when present.
    """
    status = getattr(error, "status_code", None) or "N/A"
    body = getattr(error, "body", None)
    message = error.message if isinstance(error, APIError) else str(error)

    if isinstance(body, dict):
        details = body["error"] if isinstance(body.get("error"), dict) else body
        if details.get("message"):
            message = str(details["message"])
        if details.get("metadata"):
            message += f" ({json.dumps(details['metadata'], sort_keys=True, default=str)})"
    elif isinstance(body, str) and body.strip():
        message = body.strip()

    return status, message, body


def summarize_failures(failures: Sequence[RowFailure]) -> dict[ErrorSignature, list[int]]:
    summary: dict[ErrorSignature, list[int]] = {}
    for failure in sorted(failures, key=lambda item: item.row_index):
        summary.setdefault(failure.signature, []).append(failure.row_index)
    return summary


def _format_rows(row_indices: Sequence[int]) -> str:
    return ", ".join(str(row_index + 1) for row_index in row_indices)


async def process_row(row: Row, row_index: int, column: ColumnSpec, invoker: CompletionInvoker) -> RowOutcome:
    prompt = fill_prompt_template(column.prompt, row)
    try:
        completion = await invoker.complete(
            column.model_name,
            prompt,
            column.plugins,
            column.web_search_options,
        )
    except RETRYABLE_ERRORS as error:
        status, message, body = describe_error(error)
        return RowFailure(row_index=row_index, status=status, message=message, response_body=body)

    # The task owns this row until it returns, so writing into it needs no lock.
    row.update(distribute_response(completion.text, column, row_number=row_index + 1))
    return RowSuccess(
        row_index=row_index,
        usage=UsageTotals(
            cost=completion.cost,
            prompt_tokens=completion.prompt_tokens,
            completion_tokens=completion.completion_tokens,
        ),
    )


async def _run_round(
    rows: Sequence[Row],
    pending: Sequence[int],
    column: ColumnSpec,
    invoker: CompletionInvoker,
) -> list[RowOutcome]:
    async with asyncio.TaskGroup() as task_group:
        tasks = [task_group.create_task(process_row(rows[row_index], row_index, column, invoker)) for row_index in pending]
    return [task.result() for task in tasks]


def _log_retry(retry_state: RetryCallState, max_retries: int) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome is not None else None
    if not isinstance(error, _RoundFailed):
        return
    failures = error.failures
    retry_count = retry_state.attempt_number
    delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0

    logger.warning("  ⚠ %d row(s) failed (attempt %d/%d)", len(failures), retry_count, max_retries)
    logger.warning("    Retrying failed rows: %s", _format_rows([failure.row_index for failure in failures]))
    for (status, message), affected_rows in summarize_failures(failures).items():
        logger.warning("    %s: %s (rows: %s)", status, message, _format_rows(affected_rows))
    if retry_count == 1 and failures[0].response_body is not None:
        logger.warning("    Response body: %s", json.dumps(failures[0].response_body, default=str))
    logger.warning("    Waiting %gs before retry...", delay)


async def process_batch(
    rows: Sequence[Row],
    row_indices: Sequence[int],
    column: ColumnSpec,
    invoker: CompletionInvoker,
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    sleep: SleepFn = asyncio.sleep,
) -> list[RowSuccess]:
    """Process every row in ``row_indices`` and return one success per row.

    Raises:
        BatchRetriesExhaustedError: rows still failing after ``max_retries`` retry rounds.
    """
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0.")

    pending = list(row_indices)
    successes: dict[int, RowSuccess] = {}

    retrying = AsyncRetrying(
        sleep=sleep,
        retry=retry_if_exception_type(_RoundFailed),
        stop=stop_after_attempt(max_retries + 1),
        # attempt n (1-based) failed -> wait 2 * 2**(n-1) == 2**n seconds.
        wait=wait_exponential(multiplier=2, exp_base=2),
        before_sleep=lambda retry_state: _log_retry(retry_state, max_retries),
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                outcomes = await _run_round(rows, pending, column, invoker)
                failures = [outcome for outcome in outcomes if isinstance(outcome, RowFailure)]
                for outcome in outcomes:
                    if isinstance(outcome, RowSuccess):
                        successes[outcome.row_index] = outcome
                pending = [failure.row_index for failure in failures]
                if failures:
                    raise _RoundFailed(failures)
    except _RoundFailed as exhausted:
        error_summary = summarize_failures(exhausted.failures)
        logger.error("  ✗ %d row(s) FAILED after %d retries", len(exhausted.failures), max_retries)
        logger.error("    Failed rows: %s", _format_rows(sorted(failure.row_index for failure in exhausted.failures)))
        raise BatchRetriesExhaustedError(
            column_name=column.display_name,
            row_indices=[failure.row_index for failure in exhausted.failures],
            error_summary=error_summary,
            max_retries=max_retries,
        ) from exhausted

    return [successes[row_index] for row_index in sorted(successes)]
