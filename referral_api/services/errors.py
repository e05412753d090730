"""
Error taxonomy for the referral service
"""
from typing import Optional


class ValidationError(ValueError):
    """Client-supplied input is malformed or missing (HTTP 400)"""


class CompletionError(Exception):
    """Upstream generation failed, timed out or was rate limited"""

    def __init__(self, message: str, cause: Optional[BaseException] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.cause = cause
        self.status_code = status_code


class ExtractionError(Exception):
    """The buffered completion never became a valid JSON document"""

    def __init__(self, message: str, raw_response: str = ""):
        super().__init__(message)
        # First 500 chars are enough to debug a truncated document
        self.raw_response = raw_response[:500]


class TransportError(Exception):
    """Write to a closed or broken client connection"""
