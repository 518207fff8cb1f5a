"""
Error taxonomy for the sanctions ingestion pipeline

- FetchError: network, timeout or HTTP status failures
- ExtractionError: one candidate document could not be decoded (non-fatal)
- ParseError / FeedParseError: structural assumptions violated (fatal for the run)
- ValidationError: extracted result failed a count check (fatal for publish)
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all ingestion pipeline errors"""
    pass


class FetchError(PipelineError):
    """Raised when a network fetch fails after all retries"""

    def __init__(self, message: str, url: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class ExtractionError(PipelineError):
    """Raised when text cannot be extracted from a binary payload"""

    def __init__(self, message: str, detected_format: str = "unknown"):
        super().__init__(f"[{detected_format}] {message}")
        self.detected_format = detected_format


class ParseError(PipelineError):
    """Raised when a document violates the structure the parser relies on"""
    pass


class FeedParseError(ParseError):
    """Raised for malformed XML sanctions feeds (missing root, no entities)"""
    pass


class ValidationError(PipelineError):
    """Raised when an extracted result must not be published

    Carries the observed and expected counts so the abort can be diagnosed.
    """

    def __init__(self, message: str, got: Optional[int] = None, expected: Optional[int] = None,
                 reason: str = ""):
        super().__init__(message)
        self.got = got
        self.expected = expected
        self.reason = reason

    @property
    def diagnostic(self) -> str:
        if self.got is not None and self.reason:
            return f"got {self.got} entries, {self.reason}"
        if self.got is not None and self.expected is not None:
            return f"got {self.got} entries, expected {self.expected}"
        if self.got is not None:
            return f"got {self.got} entries"
        return str(self)
