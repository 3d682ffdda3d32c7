"""
This module defines the error kinds raised and reported by HabitLog.

Every error carries a `kind` string. Write operations on the `HabitStore` catch these
errors and report the kind in their `Result`, so callers can phrase a meaningful message
without parsing exception text.
"""
# habitlog/errors.py

from typing import Optional


class HabitLogError(Exception):
    """Base class for all HabitLog errors."""
    kind = "HabitLogError"

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        self.message = message
        self.original_error = original_error
        super().__init__(self.message)


class DuplicatePhoneNumberError(HabitLogError):
    """Raised when a phone number already belongs to another user."""
    kind = "DuplicatePhoneNumber"


class InvalidCredentialsError(HabitLogError):
    """Raised for an unknown phone number or a wrong password."""
    kind = "InvalidCredentials"


class NotFoundError(HabitLogError):
    """Raised when an operation needs an entity that does not exist."""
    kind = "NotFound"


class AccessDeniedError(HabitLogError):
    """Raised when the acting user may not touch the target records."""
    kind = "AccessDenied"


class ValidationError(HabitLogError):
    """Raised when malformed input reaches the store."""
    kind = "ValidationFailure"


class PersistenceError(HabitLogError):
    """Raised when the backing store cannot be read or written."""
    kind = "PersistenceFailure"


class TranscriptionError(HabitLogError):
    """Raised when audio could not be turned into text."""
    kind = "TranscriptionFailure"


class VoiceProcessingError(HabitLogError):
    """Raised when a transcript could not be turned into habit updates at all."""
    kind = "VoiceProcessingFailure"


class ProcessingCancelled(HabitLogError):
    """Raised when voice processing was cancelled while the model call was in flight."""
    kind = "Cancelled"
