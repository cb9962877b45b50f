from __future__ import annotations


class AutomationError(RuntimeError):
    """
    Base class for errors raised synchronously by the automation core.
    """


class JobNotFoundError(AutomationError):
    pass


class JobStateError(AutomationError):
    """
    Raised when an operation is not allowed in the job's current status. No state is changed.
    """


class JobConflictError(JobStateError):
    """
    Raised when deleting a job that is still active (it must be cancelled first), or when a
    confirmation for the same job is already in flight.
    """


class UnknownCodeError(KeyError):
    """
    Raised when a category/document-type code has no portal label in the mapping table.
    """

    def __str__(self) -> str:
        # KeyError quotes its argument; keep messages readable for job logs.
        return str(self.args[0]) if self.args else ""
