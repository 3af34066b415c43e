# exam_portal/errors.py
"""Exceptions raised by the attempt flow and the persistence gateway."""


class ExamPortalError(Exception):
    """Base class for all errors raised by this package."""


# --- Store errors ---

class StoreError(ExamPortalError):
    """The persistence gateway could not complete an operation."""
    retryable = False


class TransientStoreError(StoreError):
    """Network or database temporarily unavailable. Safe to retry."""
    retryable = True


class PermanentStoreError(StoreError):
    """The store rejected the operation. Retrying will not help."""


class DuplicateRowError(PermanentStoreError):
    """A unique constraint rejected an insert."""


# --- Attempt flow errors ---

class AttemptNotFound(ExamPortalError):
    pass


class QuestionNotFound(ExamPortalError):
    pass


class ExamUnavailable(ExamPortalError):
    """The exam cannot be taken: missing, unpublished or without questions."""


class AttemptsExhausted(ExamPortalError):
    pass
