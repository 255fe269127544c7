"""
Shared error types for the intake flows.

Kept in their own module so the persistence client, the orchestrator and the
API layer all raise and catch the same classes.
"""

from typing import Optional


class IntakeError(Exception):
    """Base class for intake persistence/orchestration failures."""


class StorageError(IntakeError):
    """Blob upload/signing/removal failed (network, permissions, quota)."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class RecordError(IntakeError):
    """Structured-row insert/select/update/delete failed."""

    def __init__(self, message: str, table: Optional[str] = None):
        super().__init__(message)
        self.table = table


class PartialMigrationError(IntakeError):
    """
    A step failed after at least one earlier step of the same orchestration
    run had already written data.

    `stage` is the last stage that completed; `case_id` is the case created
    (or reused) by the run, if any; `compensated` is True when the orphan case
    was removed again.
    """

    def __init__(self, stage, case_id: Optional[str], cause: Exception, compensated: bool = False):
        stage_name = getattr(stage, "value", stage)
        super().__init__(f"Association stopped after {stage_name}: {cause}")
        self.stage = stage
        self.case_id = case_id
        self.cause = cause
        self.compensated = compensated
