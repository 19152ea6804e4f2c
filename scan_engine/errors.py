"""Error taxonomy for scan result processing.

Every error raised out of the engine carries ``retryable`` and ``status_code``
so the webhook layer can pick between a 4xx (do not redeliver) and a 5xx
(safe to redeliver) response without knowing engine internals.
"""
from typing import Any, Dict, Optional


class ScanEngineError(Exception):
    """Base class for all engine errors"""

    retryable: bool = False
    status_code: int = 500

    def __init__(self, message: str, *, media_id: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.media_id = media_id
        self.details = details or {}


class SubmissionValidationError(ScanEngineError):
    """Malformed scan submission; redelivery will not help"""

    status_code = 400


class MediaNotFoundError(ScanEngineError):
    """The submission references media that does not exist"""

    status_code = 404


class RetryableError(ScanEngineError):
    """Base class for errors that should trigger retries"""

    retryable = True
    status_code = 503


class TransientStoreError(RetryableError):
    """Backing store unavailable or connection lost mid-transaction"""


class SideEffectUnavailableError(RetryableError):
    """Downstream collaborator answered with a retryable failure"""


class RuleEvaluationError(ScanEngineError):
    """A moderation rule definition could not be parsed or evaluated"""

    def __init__(self, message: str, *, rule_id: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.rule_id = rule_id


class SideEffectError(ScanEngineError):
    """Notification, search index, review queue or cache side effect failed"""

    def __init__(self, message: str, *, kind: str, **kwargs):
        super().__init__(message, **kwargs)
        self.kind = kind


class ProcessingError(ScanEngineError):
    """Failure inside reconciliation or decision evaluation"""
