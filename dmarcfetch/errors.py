# -*- coding: utf-8 -*-

"""Exceptions raised by dmarcfetch and helpers to turn them into results"""

from __future__ import annotations

from typing import Any, Dict


class FetchError(RuntimeError):
    """Raised whenever fetching a report fails for some reason"""

    def __init__(self, message: str = "", code: int = -1):
        super().__init__(message)
        self.code = code


class SoftError(FetchError):
    """Raised for expected failures that are reported to the user"""


class ReportFileError(SoftError):
    """Raised when a report file cannot be opened or extracted"""


class InvalidReport(SoftError):
    """Raised when the extracted data is not a valid DMARC report"""


class MailboxError(FetchError):
    """Raised when a mailbox command or connection fails"""


class ConfigurationError(FetchError):
    """Raised when the configuration is incorrect"""


def exception_result(error: BaseException, debug: bool = False) -> Dict[str, Any]:
    """
    Converts an exception into a result dictionary

    Args:
        error: The exception to convert
        debug (bool): Include information about the underlying cause

    Returns:
        dict: ``error_code``, ``message`` and optionally ``debug_info``
    """
    code = getattr(error, "code", -1)
    if not isinstance(code, int) or code == 0:
        code = -1
    result: Dict[str, Any] = {"error_code": code, "message": str(error)}
    if debug and not isinstance(error, SoftError):
        cause = error.__cause__ or error
        result["debug_info"] = {
            "code": getattr(cause, "code", -1),
            "content": repr(cause),
        }
    return result
