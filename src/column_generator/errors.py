from collections.abc import Hashable


ErrorSignature = tuple[Hashable, str]


class ModelResponseError(RuntimeError):
    """The model API answered, but the body did not contain a usable completion."""


class MissingApiKeyError(RuntimeError):
    pass


class BatchRetriesExhaustedError(RuntimeError):
    """Rows in a batch still failed after the last allowed retry round.

    ``row_indices`` are zero-based positions in the row set. ``error_summary``
    maps each distinct ``(status, message)`` signature to the rows it affected.
    """

    def __init__(
        self,
        *,
        column_name: str,
        row_indices: list[int],
        error_summary: dict[ErrorSignature, list[int]],
        max_retries: int,
    ):
        self.column_name = column_name
        self.row_indices = sorted(row_indices)
        self.error_summary = error_summary
        self.max_retries = max_retries
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        lines = [
            f"{len(self.row_indices)} row(s) of '{self.column_name}' failed after {self.max_retries} retries",
            "Failed rows: " + ", ".join(str(row_index + 1) for row_index in self.row_indices),
            "Error summary:",
        ]
        for (status, message), affected_rows in self.error_summary.items():
            lines.append(f"  {status}: {message}")
            lines.append("    Affected rows: " + ", ".join(str(row_index + 1) for row_index in affected_rows))
        return "\n".join(lines)
