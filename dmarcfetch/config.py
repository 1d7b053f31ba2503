# -*- coding: utf-8 -*-

"""Loading of the INI configuration file"""

from __future__ import annotations

from configparser import ConfigParser, Error as ConfigParserError, SectionProxy
from typing import Dict, List, Optional, Tuple

from dmarcfetch.errors import ConfigurationError
from dmarcfetch.log import logger
from dmarcfetch.mail import IMAPMailBox
from dmarcfetch.sources import DirectorySource, MailboxSource, S3Source
from dmarcfetch.utils import str_to_list

DEFAULT_FETCHER_SETTINGS = {
    "mailboxes_messages_maximum": 10,
    "directories_files_maximum": 50,
    "remote_filesystems_files_maximum": 50,
}


class FetchConfig(object):
    """The settings read from a configuration file"""

    def __init__(self):
        self.debug = False
        self.verbose = False
        self.log_file: Optional[str] = None
        self.output = "output"
        self.aggregate_json_filename = "aggregate.json"
        self.log_json_filename = "report_log.json"
        self.mailboxes: List[Dict] = []
        self.directories: List[Dict] = []
        self.remote_filesystems: List[Dict] = []
        self.fetcher: Dict = dict(DEFAULT_FETCHER_SETTINGS)
        self.fetcher.update(
            {
                "mailboxes_when_done": None,
                "mailboxes_when_failed": None,
                "directories_when_done": None,
                "directories_when_failed": None,
                "remote_filesystems_when_done": None,
                "remote_filesystems_when_failed": None,
            }
        )

    def mailbox_sources(self) -> List[MailboxSource]:
        """Builds a source for every configured mailbox"""
        return [
            MailboxSource(
                mailbox,
                self.fetcher["mailboxes_when_done"],
                self.fetcher["mailboxes_when_failed"],
            )
            for mailbox in self.imap_mailboxes()
        ]

    def imap_mailboxes(self) -> List[IMAPMailBox]:
        mailboxes = []
        for settings in self.mailboxes:
            mailboxes.append(
                IMAPMailBox(
                    settings["host"],
                    settings["username"],
                    settings["password"],
                    settings["mailbox"],
                    name=settings["name"],
                    encryption=settings["encryption"],
                    novalidate_cert=settings["novalidate_cert"],
                    auth_method=settings["auth_method"],
                    timeout=settings["timeout"],
                )
            )
        return mailboxes

    def directory_sources(self) -> List[DirectorySource]:
        return [
            DirectorySource(
                settings["location"],
                self.fetcher["directories_when_done"],
                self.fetcher["directories_when_failed"],
            )
            for settings in self.directories
        ]

    def s3_sources(self) -> List[S3Source]:
        return [
            S3Source(
                settings["bucket"],
                settings["prefix"],
                region_name=settings["region_name"],
                endpoint_url=settings["endpoint_url"],
                access_key_id=settings["access_key_id"],
                secret_access_key=settings["secret_access_key"],
                when_done=self.fetcher["remote_filesystems_when_done"],
                when_failed=self.fetcher["remote_filesystems_when_failed"],
            )
            for settings in self.remote_filesystems
        ]


def _section_kind(section: str) -> Tuple[str, Optional[str]]:
    kind, _sep, name = section.partition(":")
    return kind.strip(), (name.strip() or None)


def _required(section: SectionProxy, key: str) -> str:
    if key not in section:
        raise ConfigurationError(
            "{0} setting missing from the {1} config section".format(
                key, section.name
            )
        )
    return section[key]


def _parse_mailbox(section: SectionProxy, name: Optional[str]) -> Dict:
    return {
        "host": _required(section, "host"),
        "username": _required(section, "username"),
        "password": _required(section, "password"),
        "mailbox": section.get("mailbox", "INBOX"),
        "name": section.get("name", name),
        "encryption": section.get("encryption", "ssl"),
        "novalidate_cert": section.getboolean("novalidate_cert", False),
        "auth_method": section.get("auth_method", "plain"),
        "timeout": section.getfloat("timeout", 30.0),
    }


def _parse_directory(section: SectionProxy, name: Optional[str]) -> Dict:
    return {
        "location": _required(section, "location"),
        "name": section.get("name", name),
    }


def _parse_s3(section: SectionProxy, name: Optional[str]) -> Dict:
    prefix = section.get("prefix", "")
    if prefix.startswith("/"):
        prefix = prefix[1:]
    return {
        "bucket": _required(section, "bucket"),
        "prefix": prefix,
        "name": section.get("name", name),
        "region_name": section.get("region_name"),
        "endpoint_url": section.get("endpoint_url"),
        "access_key_id": section.get("access_key_id"),
        "secret_access_key": section.get("secret_access_key"),
    }


def _parse_fetcher(section: SectionProxy, opts: FetchConfig):
    for key in DEFAULT_FETCHER_SETTINGS:
        if key in section:
            opts.fetcher[key] = section.getint(key)
    for prefix in ("mailboxes", "directories", "remote_filesystems"):
        for suffix in ("when_done", "when_failed"):
            key = "{0}_{1}".format(prefix, suffix)
            if key in section:
                opts.fetcher[key] = str_to_list(section[key])


def load_config(config_file: str) -> FetchConfig:
    """
    Reads a configuration file

    Args:
        config_file (str): The path of the INI file

    Returns:
        FetchConfig: The parsed settings
    """
    config = ConfigParser(interpolation=None)
    try:
        if not config.read(config_file):
            raise ConfigurationError(
                "Unable to read the configuration file {0}".format(config_file)
            )
    except ConfigParserError as e:
        raise ConfigurationError(
            "Invalid configuration file: {0}".format(e.__str__())
        ) from e

    opts = FetchConfig()
    try:
        if "general" in config.sections():
            general_config = config["general"]
            if "debug" in general_config:
                opts.debug = general_config.getboolean("debug")
            if "verbose" in general_config:
                opts.verbose = general_config.getboolean("verbose")
            if "log_file" in general_config:
                opts.log_file = general_config["log_file"]
            if "output" in general_config:
                opts.output = general_config["output"]
            if "aggregate_json_filename" in general_config:
                opts.aggregate_json_filename = general_config[
                    "aggregate_json_filename"
                ]
            if "log_json_filename" in general_config:
                opts.log_json_filename = general_config["log_json_filename"]

        for section in config.sections():
            kind, name = _section_kind(section)
            if kind == "mailbox":
                opts.mailboxes.append(_parse_mailbox(config[section], name))
            elif kind == "directory":
                opts.directories.append(_parse_directory(config[section], name))
            elif kind == "s3":
                opts.remote_filesystems.append(_parse_s3(config[section], name))
            elif kind == "fetcher":
                _parse_fetcher(config[section], opts)
            elif kind != "general":
                logger.warning("Unknown config section: {0}".format(section))
    except ValueError as e:
        raise ConfigurationError(
            "Invalid configuration value: {0}".format(e.__str__())
        ) from e

    return opts
