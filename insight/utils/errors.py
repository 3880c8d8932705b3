from __future__ import annotations


class InsightError(Exception):
    """Base error; ``status`` mirrors the HTTP-style code of the failing service."""

    status: int = 500

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class ValidationError(InsightError):
    status = 400


class UpstreamError(InsightError):
    status = 502


class ParseError(InsightError):
    status = 422


class ExecutionError(InsightError):
    status = 500


class CancellationError(InsightError):
    status = 499

    def __init__(self, message: str = "operation superseded"):
        super().__init__(message)


class PersistenceError(InsightError):
    status = 500
