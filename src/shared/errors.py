"""Error taxonomy shared by every pipeline stage.

Each error carries a ``retryable`` flag.  The worker loop reads it to decide
whether a failing item goes back to its queue with backoff or straight to
the dead-letter channel.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = True


class TransientIOError(PipelineError):
    """Network / storage timeout or lock contention.  Retried with backoff."""


class MalformedInputError(PipelineError):
    """Object content that the classifier cannot parse.

    Retried like any item failure so that a fixed parser (or a late-arriving
    complete object) gets a chance; dead-lettered once the budget runs out.
    """


class ConfigurationError(PipelineError):
    """Missing catalog table/database, unknown source id, bad config."""

    retryable = False


class CatalogTableNotFound(ConfigurationError):
    """Partition registration targeted a database or table that does not exist."""

    def __init__(self, database: str, table: str | None = None) -> None:
        self.database = database
        self.table = table
        target = f"{database}.{table}" if table else database
        super().__init__(f"catalog target not found: {target}")


class ConcurrencyConflict(PipelineError):
    """A conditional write lost a race; the read-modify-write must be repeated."""


class ExhaustedRetriesError(PipelineError):
    """Terminal: the retry budget is spent, the item belongs in a dead-letter queue."""

    retryable = False
