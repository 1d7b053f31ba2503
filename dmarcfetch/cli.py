#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""A CLI for fetching DMARC report files"""

import json
import logging
import os
from argparse import ArgumentParser
from glob import glob

from tqdm import tqdm

from dmarcfetch import __version__
from dmarcfetch.config import FetchConfig, load_config
from dmarcfetch.errors import ConfigurationError, FetchError
from dmarcfetch.fetcher import ReportFetcher, make_summary_result
from dmarcfetch.log import logger
from dmarcfetch.sources import UploadedFilesSource
from dmarcfetch.storage import JSONReportStorage

formatter = logging.Formatter(
    fmt="%(levelname)8s:%(filename)s:%(lineno)d:%(message)s",
    datefmt="%Y-%m-%d:%H:%M:%S",
)
handler = logging.StreamHandler()
handler.setFormatter(formatter)
logger.addHandler(handler)

SOURCE_CHOICES = ("all", "mailboxes", "directories", "s3")


def _print_json(data):
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _fetch_files(file_paths, storage, debug=False):
    results = []
    show_progress = len(file_paths) > 1 and not debug
    pbar = None
    if show_progress:
        pbar = tqdm(total=len(file_paths))
    for file_path in file_paths:
        fetcher = ReportFetcher(
            UploadedFilesSource([(file_path, os.path.basename(file_path))]),
            storage,
            debug=debug,
        )
        results.extend(fetcher.fetch())
        if pbar is not None:
            pbar.update(1)
    if pbar is not None:
        pbar.close()
    return results


def _fetch_sources(opts: FetchConfig, source_choice, storage, debug=False):
    results = []
    if source_choice in ("all", "mailboxes"):
        for source in opts.mailbox_sources():
            logger.info("Fetching reports from mailbox {0}".format(source.mailbox.name()))
            fetcher = ReportFetcher(
                source,
                storage,
                limit=opts.fetcher["mailboxes_messages_maximum"],
                debug=debug,
            )
            results.extend(fetcher.fetch())
    if source_choice in ("all", "directories"):
        for source in opts.directory_sources():
            logger.info("Fetching reports from directory {0}".format(source.location))
            fetcher = ReportFetcher(
                source,
                storage,
                limit=opts.fetcher["directories_files_maximum"],
                debug=debug,
            )
            results.extend(fetcher.fetch())
    if source_choice in ("all", "s3"):
        for source in opts.s3_sources():
            logger.info("Fetching reports from S3 bucket {0}".format(source.bucket))
            fetcher = ReportFetcher(
                source,
                storage,
                limit=opts.fetcher["remote_filesystems_files_maximum"],
                debug=debug,
            )
            results.extend(fetcher.fetch())
    return results


def _main():
    """Called when the module is executed"""

    arg_parser = ArgumentParser(description="Fetches DMARC report files")
    arg_parser.add_argument(
        "-c", "--config-file", help="a path to a configuration file"
    )
    arg_parser.add_argument(
        "file_path",
        nargs="*",
        help="one or more paths to aggregate report files (xml, gzip or zip)",
    )
    arg_parser.add_argument(
        "--source",
        choices=SOURCE_CHOICES,
        default="all",
        help="the configured sources to fetch reports from (default: all)",
    )
    arg_parser.add_argument(
        "-o", "--output", help="write output files to the given directory"
    )
    arg_parser.add_argument(
        "--check",
        action="store_true",
        help="check the configured mailboxes and exit",
    )
    arg_parser.add_argument(
        "--verbose", action="store_true", help="more verbose output"
    )
    arg_parser.add_argument(
        "--debug", action="store_true", help="print debugging information"
    )
    arg_parser.add_argument("--log-file", default=None, help="output logging to a file")
    arg_parser.add_argument("-v", "--version", action="version", version=__version__)

    args = arg_parser.parse_args()

    opts = FetchConfig()
    if args.config_file:
        abs_path = os.path.abspath(args.config_file)
        if not os.path.exists(abs_path):
            logger.error("A file does not exist at {0}".format(abs_path))
            exit(-1)
        try:
            opts = load_config(abs_path)
        except ConfigurationError as error:
            logger.critical(error.__str__())
            exit(-1)
    if args.output:
        opts.output = args.output
    if args.verbose:
        opts.verbose = True
    if args.debug:
        opts.debug = True
    if args.log_file:
        opts.log_file = args.log_file

    logger.setLevel(logging.WARNING)

    if opts.verbose:
        logger.setLevel(logging.INFO)
    if opts.debug:
        logger.setLevel(logging.DEBUG)
    if opts.log_file:
        try:
            fh = logging.FileHandler(opts.log_file, "a")
            file_formatter = logging.Formatter(
                "%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )
            fh.setFormatter(file_formatter)
            logger.addHandler(fh)
        except OSError as error:
            logger.warning("Unable to write to log file: {}".format(error))

    if args.check:
        try:
            mailboxes = opts.imap_mailboxes()
        except ConfigurationError as error:
            logger.critical(error.__str__())
            exit(-1)
        if len(mailboxes) == 0:
            logger.error("There are no mailboxes in the configuration")
            exit(1)
        checks = []
        for mailbox in mailboxes:
            result = mailbox.check()
            result["name"] = mailbox.name()
            result["host"] = mailbox.host()
            result["mailbox"] = mailbox.folder()
            mailbox.cleanup()
            checks.append(result)
        _print_json(checks)
        if any(result["error_code"] != 0 for result in checks):
            exit(1)
        exit(0)

    file_paths = []
    for file_path in args.file_path:
        file_paths += glob(file_path)
    file_paths = list(dict.fromkeys(file_paths))

    if len(file_paths) == 0 and not args.config_file:
        logger.error("You must supply input files or a configuration file")
        exit(1)

    logger.info("Starting dmarcfetch")
    storage = JSONReportStorage(
        opts.output, opts.aggregate_json_filename, opts.log_json_filename
    )

    results = []
    try:
        results += _fetch_files(file_paths, storage, opts.debug)
        if args.config_file:
            results += _fetch_sources(opts, args.source, storage, opts.debug)
    except ConfigurationError as error:
        logger.critical(error.__str__())
        exit(-1)
    except FetchError as error:
        logger.error(error.__str__())
        results.append({"source_error": error.__str__()})

    summary = make_summary_result(results)
    _print_json(summary)
    if summary["error_code"] != 0:
        exit(1)


if __name__ == "__main__":
    _main()
