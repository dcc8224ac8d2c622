"""
Error taxonomy for the requirement tracker.

  ValidationError           Bad input, raised before any store call.  The
                            caller fixes the input and resubmits.
  NotFoundError             The referenced entity is not in the snapshot.
  StoreError                The entity store failed.  Multi-step operations
                            do not roll back; ``completed`` lists the tables
                            already written when the failure happened.
  DuplicateSubmissionError  The same mutation is already awaiting the store.
  ConsistencyError          Dangling PO reference or missing material.  The
                            core logs these and carries on; callers may raise
                            it when checking references explicitly.
"""
from typing import Iterable, Optional

# ValidationError codes
OUT_OF_RANGE      = "OutOfRange"
EXCEEDS_AVAILABLE = "ExceedsAvailable"
NO_STOCK          = "NoStock"
INVALID_INPUT     = "InvalidInput"
ALL_CODES         = {OUT_OF_RANGE, EXCEEDS_AVAILABLE, NO_STOCK, INVALID_INPUT}


class TrackerError(Exception):
    """Base class for all tracker errors."""


class ValidationError(TrackerError):
    def __init__(
        self,
        code: str,
        message: str,
        field: Optional[str] = None,
        material_name: Optional[str] = None,
    ) -> None:
        if code not in ALL_CODES:
            raise ValueError(f"Unknown validation code {code!r}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.field = field
        self.material_name = material_name

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "field": self.field,
            "materialName": self.material_name,
        }


class NotFoundError(TrackerError):
    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class StoreError(TrackerError):
    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        operation: Optional[str] = None,
        completed: Iterable[str] = (),
    ) -> None:
        super().__init__(message)
        self.table = table
        self.operation = operation
        self.completed = tuple(completed)

    def after(self, completed: Iterable[str]) -> "StoreError":
        """Return a copy recording the steps that succeeded before this failure."""
        err = StoreError(str(self), self.table, self.operation, completed)
        err.__cause__ = self.__cause__ or self
        return err


class DuplicateSubmissionError(TrackerError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Request already in progress: {key}")
        self.key = key


class ConsistencyError(TrackerError):
    def __init__(self, message: str, po_number: Optional[str] = None,
                 material_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.po_number = po_number
        self.material_name = material_name
