import asyncio
import logging

import pytest

from column_generator.column_driver import batch_ranges, run_column
from column_generator.errors import BatchRetriesExhaustedError, ModelResponseError
from column_generator.model_client import CompletionResult
from column_generator.schema import GroupColumnSpec, SingleColumnSpec


class EchoInvoker:
    def __init__(self, failing_prompts=()):
        self.failing_prompts = set(failing_prompts)
        self.calls: list[str] = []

    async def complete(self, model, prompt, plugins=None, web_search_options=None):
        self.calls.append(prompt)
        if prompt in self.failing_prompts:
            raise ModelResponseError("Model API response contained no choices.")
        return CompletionResult(text=f"summary of {prompt}", cost=0.5, prompt_tokens=3, completion_tokens=1, total_tokens=4)


class RecordingCheckpoint:
    def __init__(self):
        self.snapshots: list[list[dict[str, str]]] = []

    def write(self, rows):
        self.snapshots.append([dict(row) for row in rows])


class FailingCheckpoint:
    def __init__(self):
        self.attempts = 0

    def write(self, rows):
        self.attempts += 1
        raise PermissionError("progress file is read-only")


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _column(batch_size: int = 2, cooldown: int = 0) -> SingleColumnSpec:
    return SingleColumnSpec(
        columnName="Summary",
        modelName="openai/gpt-4o-mini",
        prompt="{{Title}}",
        batchSize=batch_size,
        cooldown=cooldown,
    )


def _rows(count: int) -> list[dict[str, str]]:
    return [{"Title": f"t{index}"} for index in range(count)]


def test_batch_ranges_cover_rows_in_order_with_short_last_batch():
    assert batch_ranges(5, 2) == [range(0, 2), range(2, 4), range(4, 5)]
    assert batch_ranges(4, 10) == [range(0, 4)]
    assert batch_ranges(0, 3) == []


def test_batch_ranges_rejects_non_positive_batch_size():
    with pytest.raises(ValueError, match="batch_size"):
        batch_ranges(3, 0)


def test_run_column_checkpoints_after_every_batch_and_folds_usage():
    rows = _rows(5)
    checkpoint = RecordingCheckpoint()

    result = asyncio.run(run_column(_column(batch_size=2), rows, EchoInvoker(), checkpoint=checkpoint, sleep=RecordingSleep()))

    assert result.batch_count == 3
    assert result.rows_processed == 5
    assert result.totals.cost == pytest.approx(2.5)
    assert result.totals.prompt_tokens == 15
    assert result.totals.completion_tokens == 5
    assert result.totals.total_tokens == 20
    assert result.average_cost_per_row == pytest.approx(0.5)
    assert result.target_fields == ("Summary",)

    assert len(checkpoint.snapshots) == 3
    assert [row.get("Summary") for row in checkpoint.snapshots[0]] == [
        "summary of t0",
        "summary of t1",
        None,
        None,
        None,
    ]
    assert all("Summary" in row for row in checkpoint.snapshots[-1])


def test_run_column_cools_down_between_batches_but_not_after_the_last():
    sleep = RecordingSleep()

    asyncio.run(run_column(_column(batch_size=2, cooldown=1500), _rows(5), EchoInvoker(), sleep=sleep))

    assert sleep.delays == [1.5, 1.5]


def test_run_column_skips_cooldown_when_zero():
    sleep = RecordingSleep()

    asyncio.run(run_column(_column(batch_size=1), _rows(3), EchoInvoker(), sleep=sleep))

    assert sleep.delays == []


def test_run_column_processes_batches_sequentially():
    invoker = EchoInvoker()

    asyncio.run(run_column(_column(batch_size=2), _rows(6), invoker, sleep=RecordingSleep()))

    batches = [set(invoker.calls[start:start + 2]) for start in range(0, 6, 2)]
    assert batches == [{"t0", "t1"}, {"t2", "t3"}, {"t4", "t5"}]


def test_checkpoint_failures_are_logged_not_fatal(caplog):
    checkpoint = FailingCheckpoint()
    rows = _rows(3)

    with caplog.at_level(logging.WARNING, logger="column_generator.column_driver"):
        result = asyncio.run(run_column(_column(batch_size=2), rows, EchoInvoker(), checkpoint=checkpoint, sleep=RecordingSleep()))

    assert result.rows_processed == 3
    assert checkpoint.attempts == 2
    assert "Failed to write progress file: progress file is read-only" in caplog.text


def test_exhausted_batch_stops_the_column_after_checkpointing_earlier_batches():
    checkpoint = RecordingCheckpoint()
    invoker = EchoInvoker(failing_prompts={"t3"})

    with pytest.raises(BatchRetriesExhaustedError) as exc_info:
        asyncio.run(
            run_column(
                _column(batch_size=2),
                _rows(6),
                invoker,
                checkpoint=checkpoint,
                max_retries=2,
                sleep=RecordingSleep(),
            )
        )

    assert exc_info.value.row_indices == [3]
    assert len(checkpoint.snapshots) == 1
    assert "t4" not in invoker.calls


def test_run_column_warns_about_placeholders_no_row_provides(caplog):
    column = SingleColumnSpec(columnName="Summary", modelName="m", prompt="{{Title}} {{Missing Field}}")

    with caplog.at_level(logging.WARNING, logger="column_generator.column_driver"):
        asyncio.run(run_column(column, _rows(1), EchoInvoker(), sleep=RecordingSleep()))

    assert "Prompt placeholders not found in any row (left unfilled): Missing Field" in caplog.text


def test_run_column_counts_unresolved_cells_in_its_summary(caplog):
    class PartialJsonInvoker:
        async def complete(self, model, prompt, plugins=None, web_search_options=None):
            if prompt == "t0":
                return CompletionResult(text='{"Game": "Chess"}')
            return CompletionResult(text="not json")

    column = GroupColumnSpec(groupName="Classification", columns=["Game", "Category"], modelName="m", prompt="{{Title}}")
    rows = _rows(2)

    with caplog.at_level(logging.INFO, logger="column_generator.column_driver"):
        result = asyncio.run(run_column(column, rows, PartialJsonInvoker(), sleep=RecordingSleep()))

    assert result.unresolved_cells == 3
    assert "Unresolved:     3 cell(s) set to __undetectable__" in caplog.text
