# -*- coding: utf-8 -*-

"""Loads report files from a source into a storage"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from dmarcfetch.errors import FetchError, exception_result
from dmarcfetch.log import logger
from dmarcfetch.sources import Source
from dmarcfetch.storage import ReportLogItem, ReportStorage


class ReportFetcher(object):
    """Extracts the report files of a source and saves them"""

    def __init__(
        self,
        source: Source,
        storage: ReportStorage,
        limit: int = 0,
        debug: bool = False,
    ):
        """
        Args:
            source: The source of report files
            storage: Where the reports and the report log are saved
            limit (int): Maximum number of report files to process
                (use 0 for no limit)
            debug (bool): Add debug information to failed results
        """
        self._source = source
        self._storage = storage
        self._limit = limit
        self._debug = debug

    def fetch(self) -> List[Dict[str, Any]]:
        """
        Returns:
            list: A result dictionary for each processed report file, or a
            single ``source_error`` entry if the source cannot be read
        """
        try:
            try:
                items = self._source.items()
            except FetchError as e:
                logger.error(e.__str__())
                return [{"source_error": e.__str__()}]

            if self._limit > 0:
                items = items[: self._limit]
            logger.debug(
                "Processing {0} report files from {1}".format(
                    len(items), self._source.source_type.value
                )
            )
            results = []
            for item in items:
                try:
                    results.append(self._fetch_item(item))
                finally:
                    item.close()
            return results
        finally:
            self._source.close()

    def _fetch_item(self, item) -> Dict[str, Any]:
        source_type = self._source.source_type
        filename: Optional[str] = None
        report: Optional[Dict[str, Any]] = None
        error_message: Optional[str] = None
        result: Dict[str, Any]

        # Extracting and saving the report
        try:
            with item.open() as report_file:
                filename = report_file.filename
                data = report_file.read()
            report = self._storage.save_report(data, filename)
            result = {
                "error_code": 0,
                "message": "Successfully loaded",
                "filename": filename,
                "report_id": report.get("report_id"),
                "domain": report.get("domain"),
            }
            success = True
        except FetchError as e:
            logger.warning(
                "Failed to load {0}: {1}".format(filename or "report file", e)
            )
            error_message = e.__str__()
            result = exception_result(e, self._debug)
            success = False

        # Post processing
        try:
            if success:
                item.accepted()
            else:
                item.rejected()
        except FetchError as e:
            error_message = e.__str__()
            result["post_processing_message"] = error_message

        # Logging the outcome
        if error_message is None:
            log_item = ReportLogItem.succeeded(source_type, report, filename)
        else:
            log_item = ReportLogItem.failed(
                source_type, report, filename, error_message
            )
            result.update(item.details())
            if report is not None:
                result["report_id"] = report.get("report_id")
        self._storage.save_log(log_item)
        return result


def make_summary_result(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Combines the results of one or more fetches into one result

    Args:
        results (list): Results returned by ``ReportFetcher.fetch``

    Returns:
        dict: ``error_code``, ``message`` and, if there are several, the
        individual ``results`` and ``other_errors``
    """
    reports = []
    others = []
    loaded = 0
    for res in results:
        if "source_error" in res:
            others.append(res["source_error"])
        else:
            reports.append(res)
            if res.get("error_code", 0) == 0:
                loaded += 1
            if "post_processing_message" in res:
                others.append(res["post_processing_message"])

    r_count = len(reports)
    o_count = len(others)
    if r_count + o_count == 1:
        if r_count == 1:
            return reports[0]
        return {"error_code": -1, "message": others[0]}

    result: Dict[str, Any] = {}
    if loaded == r_count:
        error_code = 0
        message = None
        if r_count > 0:
            message = "{0} report files have been loaded successfully".format(r_count)
        elif o_count == 0:
            message = "There are no report files to load"
        else:
            error_code = -1
    else:
        error_code = -1
        if loaded > 0:
            message = "Only {0} of the {1} report files have been loaded".format(
                loaded, r_count
            )
        else:
            message = "None of the {0} report files has been loaded".format(r_count)
    result["error_code"] = error_code
    result["message"] = message
    if r_count > 0:
        result["results"] = reports
    if o_count > 0:
        result["other_errors"] = others
    return result
