"""Exceptions raised by the workstream report services."""

from typing import Optional


class ReportError(Exception):
    """Base class for report service errors."""


class NotFoundError(ReportError):
    """A requested project, workstream or issue is not known.

    Raised when a workstream is requested before the project listing that
    contains it was loaded, or when the root issue does not exist in Jira.
    """


class DataSourceError(ReportError):
    """Any failure while talking to the issue tracker."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class QueryTooLargeError(DataSourceError):
    """A search matched more issues than we are willing to page through."""
