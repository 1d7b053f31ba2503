# -*- coding: utf-8 -*-

"""A Python package for fetching DMARC aggregate report files from
mailboxes, directories and S3 buckets"""

from dmarcfetch.constants import __version__
from dmarcfetch.errors import (
    ConfigurationError,
    FetchError,
    InvalidReport,
    MailboxError,
    ReportFileError,
    SoftError,
)
from dmarcfetch.fetcher import ReportFetcher, make_summary_result
from dmarcfetch.log import logger
from dmarcfetch.report_file import GzipCutFilter, ReportFile, get_mime_type
from dmarcfetch.sources import (
    DirectorySource,
    MailboxSource,
    S3Source,
    SourceAction,
    UploadedFilesSource,
)
from dmarcfetch.storage import JSONReportStorage, ReportLogItem, ReportStorage

logger.debug("dmarcfetch v{0}".format(__version__))

__all__ = [
    "__version__",
    "ConfigurationError",
    "FetchError",
    "InvalidReport",
    "MailboxError",
    "ReportFileError",
    "SoftError",
    "ReportFetcher",
    "make_summary_result",
    "GzipCutFilter",
    "ReportFile",
    "get_mime_type",
    "DirectorySource",
    "MailboxSource",
    "S3Source",
    "SourceAction",
    "UploadedFilesSource",
    "JSONReportStorage",
    "ReportLogItem",
    "ReportStorage",
]
