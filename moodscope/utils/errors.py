"""
Custom exceptions for MoodScope.

Provides domain-specific exceptions with clear error messages and
support for structured error handling.
"""

from typing import Optional, Dict, Any


class MoodScopeError(Exception):
    """Base exception for all MoodScope errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# ============================================================================
# Database Errors
# ============================================================================

class DatabaseError(MoodScopeError):
    """Database operation failed."""
    pass


class RecordNotFoundError(DatabaseError):
    """Database record not found."""
    pass


class DuplicateRecordError(DatabaseError):
    """Attempted to create a duplicate record."""
    pass


class AppendOnlyViolation(DatabaseError):
    """Attempted to update or delete an append-only history row."""
    pass


# ============================================================================
# Input Validation Errors
# ============================================================================

class ValidationError(MoodScopeError):
    """Input validation failed."""
    pass


class InvalidScoreError(ValidationError):
    """Score outside the 0-10 mood scale."""
    pass


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(MoodScopeError):
    """Scoring configuration is invalid."""
    pass


# ============================================================================
# Scoring & Delta Errors
# ============================================================================

class LowSignalInput(MoodScopeError):
    """Unit content yields no usable evidence. Recovered by the scorer."""
    pass


class OrderingError(MoodScopeError):
    """Score sequence timestamps are not monotonic."""
    pass


class InsufficientHistory(MoodScopeError):
    """Too few scores to establish an emotional baseline."""
    pass


# ============================================================================
# Validation & Calibration Errors
# ============================================================================

class IncompleteValidation(MoodScopeError):
    """Validation result has no human score and cannot feed calibration."""
    pass


class CalibrationRejected(MoodScopeError):
    """Calibration proposal failed a safety check."""
    pass


class CalibrationApplicationFailure(MoodScopeError):
    """Calibration application did not complete."""
    pass
