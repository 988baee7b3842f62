"""
errors.py
~~~~~~~~~

Result codes returned by the network engine and the model codec.
"""

from enum import Enum


class NetworkError(Enum):
    """Outcome of an engine or codec operation."""

    NO_ERROR = "no_error"
    INVALID_PARAMETERS = "invalid_parameters"
    ALLOCATION_FAILED = "allocation_failed"
    MODEL_READ_ERROR = "model_read_error"
    MODEL_SAVE_ERROR = "model_save_error"
    INVALID_MAGIC_NUMBER = "invalid_magic_number"
    STREAM_NOT_OPEN = "stream_not_open"

    def __bool__(self) -> bool:
        # Truthy only for failures, so callers can write ``if error:``
        return self is not NetworkError.NO_ERROR
