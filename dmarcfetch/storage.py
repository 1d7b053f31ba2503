# -*- coding: utf-8 -*-

"""Persistence of extracted reports and of the report log"""

from __future__ import annotations

import os
import xml.parsers.expat as expat
from abc import ABC
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set, Tuple

import xmltodict

from dmarcfetch.errors import FetchError, InvalidReport
from dmarcfetch.log import logger
from dmarcfetch.sources import SourceType
from dmarcfetch.utils import append_json, timestamp_to_human


class ReportLogItem(object):
    """A record about an attempt to load a report file"""

    def __init__(
        self,
        source: SourceType,
        filename: Optional[str],
        success: bool,
        message: Optional[str] = None,
        domain: Optional[str] = None,
        external_id: Optional[str] = None,
        event_time: Optional[datetime] = None,
    ):
        self.source = source
        self.filename = filename
        self.success = success
        self.message = message
        self.domain = domain
        self.external_id = external_id
        self.event_time = event_time or datetime.now(timezone.utc)

    @classmethod
    def succeeded(
        cls,
        source: SourceType,
        report: Dict[str, Any],
        filename: Optional[str],
        message: Optional[str] = None,
    ) -> "ReportLogItem":
        return cls(
            source,
            filename,
            True,
            message,
            domain=report.get("domain"),
            external_id=report.get("report_id"),
        )

    @classmethod
    def failed(
        cls,
        source: SourceType,
        report: Optional[Dict[str, Any]],
        filename: Optional[str],
        message: Optional[str],
    ) -> "ReportLogItem":
        report = report or {}
        return cls(
            source,
            filename,
            False,
            message,
            domain=report.get("domain"),
            external_id=report.get("report_id"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "external_id": self.external_id,
            "event_time": self.event_time.strftime("%Y-%m-%d %H:%M:%S"),
            "filename": self.filename,
            "source": self.source.value,
            "success": self.success,
            "message": self.message,
        }


def source_to_string(source: SourceType) -> str:
    return source.value


def string_to_source(source: str) -> Optional[SourceType]:
    try:
        return SourceType(source)
    except ValueError:
        return None


class ReportStorage(ABC):
    """
    Interface for the storage of reports and of the report log
    """

    def save_report(self, data: bytes, filename: Optional[str]) -> Dict[str, Any]:
        """
        Parses and stores a report

        Args:
            data (bytes): The decompressed report
            filename (str): The name of the report file

        Returns:
            dict: At least ``domain`` and ``report_id`` of the stored report
        """
        raise NotImplementedError

    def save_log(self, item: ReportLogItem):
        raise NotImplementedError


def parse_report_metadata(data: bytes) -> Dict[str, Any]:
    """
    Parses a DMARC aggregate report

    Args:
        data (bytes): The report XML

    Returns:
        dict: ``org_name``, ``report_id``, ``domain``, ``begin_date``,
        ``end_date`` and the whole parsed ``feedback`` element
    """
    try:
        report = xmltodict.parse(data)
    except expat.ExpatError as e:
        raise InvalidReport("The report is not a valid XML document") from e
    feedback = report.get("feedback") if isinstance(report, dict) else None
    if not isinstance(feedback, dict):
        raise InvalidReport("The report is not a DMARC aggregate report")

    metadata = feedback.get("report_metadata")
    policy = feedback.get("policy_published")
    if not isinstance(metadata, dict) or not isinstance(policy, dict):
        raise InvalidReport("Incorrect report data")
    report_id = metadata.get("report_id")
    domain = policy.get("domain")
    org_name = metadata.get("org_name")
    # Elements with attributes or children are parsed as dictionaries
    if not isinstance(report_id, str) or not isinstance(domain, str):
        raise InvalidReport("Incorrect report data")
    if not report_id or not domain:
        raise InvalidReport("Incorrect report data")
    if org_name is not None and not isinstance(org_name, str):
        raise InvalidReport("Incorrect report data")

    begin_date = None
    end_date = None
    date_range = metadata.get("date_range") or {}
    if not isinstance(date_range, dict):
        raise InvalidReport("Incorrect report date range")
    try:
        if "begin" in date_range:
            begin_date = timestamp_to_human(date_range["begin"])
        if "end" in date_range:
            end_date = timestamp_to_human(date_range["end"])
    except (TypeError, ValueError, OverflowError) as e:
        raise InvalidReport("Incorrect report date range") from e

    return {
        "org_name": org_name,
        "report_id": report_id,
        "domain": domain,
        "begin_date": begin_date,
        "end_date": end_date,
        "feedback": feedback,
    }


class JSONReportStorage(ReportStorage):
    """Stores reports and the report log as JSON files in a directory"""

    def __init__(
        self,
        output_directory: str = "output",
        aggregate_json_filename: str = "aggregate.json",
        log_json_filename: str = "report_log.json",
    ):
        self.output_directory = output_directory
        self.aggregate_json_path = os.path.join(
            output_directory, aggregate_json_filename
        )
        self.log_json_path = os.path.join(output_directory, log_json_filename)
        self._saved: Set[Tuple[Optional[str], str]] = set()

    def save_report(self, data: bytes, filename: Optional[str]) -> Dict[str, Any]:
        report = parse_report_metadata(data)
        report_key = (report["org_name"], report["report_id"])
        if report_key in self._saved:
            raise InvalidReport(
                "The report {0} has already been loaded".format(report["report_id"])
            )
        report["filename"] = filename
        try:
            self._ensure_directory()
            append_json(self.aggregate_json_path, [report])
        except (OSError, ValueError) as e:
            raise FetchError(
                "Failed to save the report: {0}".format(e.__str__())
            ) from e
        self._saved.add(report_key)
        logger.debug(
            "Saved report {0} for {1}".format(report["report_id"], report["domain"])
        )
        return {
            "domain": report["domain"],
            "report_id": report["report_id"],
            "org_name": report["org_name"],
        }

    def save_log(self, item: ReportLogItem):
        try:
            self._ensure_directory()
            append_json(self.log_json_path, [item.to_dict()])
        except (OSError, ValueError) as e:
            logger.error("Failed to save the report log: {0}".format(e.__str__()))

    def _ensure_directory(self):
        if not os.path.exists(self.output_directory):
            os.makedirs(self.output_directory)
