# -*- coding: utf-8 -*-

"""Sources of report files and the actions applied to processed items"""

from __future__ import annotations

import io
import os
import posixpath
from abc import ABC
from enum import Enum
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple, Union

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from dmarcfetch.constants import MIME_TYPE_GZIP, MIME_TYPE_XML, MIME_TYPE_ZIP
from dmarcfetch.errors import (
    ConfigurationError,
    FetchError,
    ReportFileError,
    SoftError,
)
from dmarcfetch.log import logger
from dmarcfetch.mail import MailBox, MailMessage, SearchCriteria, SortOrder
from dmarcfetch.report_file import ReportFile

FLAG_BASENAME = 1

REPORT_MIME_TYPES = (MIME_TYPE_ZIP, MIME_TYPE_GZIP, MIME_TYPE_XML)

ActionSetting = Union[None, str, Iterable[Any]]


class ActionType(Enum):
    MARK_SEEN = 1
    MOVE_TO = 2
    DELETE = 3


ACTION_NAMES = {
    "mark_seen": ActionType.MARK_SEEN,
    "move_to": ActionType.MOVE_TO,
    "delete": ActionType.DELETE,
}


class SourceAction(NamedTuple):
    """One action to apply to a source item after it has been processed"""

    type: ActionType
    param: Optional[str] = None

    @classmethod
    def parse(cls, action: str) -> Optional["SourceAction"]:
        """
        Parses an action name with an optional parameter separated by a
        colon, for example ``move_to:failed`` or ``delete``

        Returns:
            The action, or ``None`` if the string is not a valid action
        """
        name, _sep, param = action.partition(":")
        action_type = ACTION_NAMES.get(name)
        if action_type is None:
            return None
        if action_type == ActionType.MOVE_TO:
            if not param:
                return None
            return cls(action_type, param)
        if param:
            return None
        return cls(action_type)

    @classmethod
    def from_setting(
        cls, setting: ActionSetting, flags: int = 0, default: str = ""
    ) -> List["SourceAction"]:
        """
        Builds the list of actions from a configuration setting

        Invalid and unknown entries are skipped, as are duplicates. The
        default action is used only if the setting is empty.

        Args:
            setting: An action string or a list of action strings
            flags (int): ``FLAG_BASENAME`` to skip ``move_to`` actions whose
                target is a path rather than a plain folder name
            default (str): The action to use if the setting is empty

        Returns:
            list: ``SourceAction`` instances in the order of the setting
        """
        if setting is None:
            entries: List[Any] = []
        elif isinstance(setting, str):
            entries = [setting] if setting else []
        else:
            entries = list(setting)

        actions: List[SourceAction] = []
        for entry in entries:
            if not isinstance(entry, str):
                continue
            action = cls.parse(entry)
            if action is None or action in actions:
                continue
            if flags & FLAG_BASENAME and not action.is_basename():
                continue
            actions.append(action)

        if len(entries) == 0 and default:
            return cls.from_setting([default], flags)
        return actions

    def is_basename(self) -> bool:
        """Checks that a move target is a folder name without a path"""
        if self.type != ActionType.MOVE_TO:
            return True
        return "/" not in self.param and os.sep not in self.param


class SourceType(Enum):
    UPLOADED_FILE = "uploaded_file"
    MAILBOX = "email"
    DIRECTORY = "directory"
    REMOTE_FILESYSTEM = "remotefs"


class SourceItem(ABC):
    """
    An item of a source that contains one report file
    """

    def open(self) -> ReportFile:
        raise NotImplementedError

    def accepted(self):
        """Called after the report has been saved"""

    def rejected(self):
        """Called after the report has failed to be processed"""

    def details(self) -> Dict[str, Any]:
        """Extra information about a failed item"""
        return {}

    def close(self):
        pass


class Source(ABC):
    """
    Interface for a source of report files
    """

    source_type: SourceType

    def items(self) -> List[SourceItem]:
        raise NotImplementedError

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


class UploadedFileItem(SourceItem):
    def __init__(self, path: str, filename: Optional[str] = None):
        self.path = path
        self.filename = filename

    def open(self) -> ReportFile:
        return ReportFile.from_file(self.path, self.filename)


class UploadedFilesSource(Source):
    """Report files uploaded by a user or passed on the command line"""

    source_type = SourceType.UPLOADED_FILE

    def __init__(self, files: Iterable[Union[str, Tuple[str, str]]]):
        """
        Args:
            files: File paths, or tuples of a file path and the original
                file name
        """
        self._files = list(files)

    def items(self) -> List[SourceItem]:
        items: List[SourceItem] = []
        for file in self._files:
            if isinstance(file, tuple):
                items.append(UploadedFileItem(file[0], file[1]))
            else:
                items.append(UploadedFileItem(file))
        return items


class MailboxItem(SourceItem):
    def __init__(self, source: "MailboxSource", message: MailMessage):
        self._source = source
        self.message = message

    def open(self) -> ReportFile:
        attachment = self.message.attachment()
        mime_type = attachment.mime_type()
        if mime_type not in REPORT_MIME_TYPES:
            raise SoftError(
                "Attachment file type is not valid ({0})".format(mime_type)
            )
        filename = attachment.filename() or "report"
        return ReportFile.from_stream(attachment.stream(), filename, mime_type)

    def accepted(self):
        self._process(self._source.when_done)

    def rejected(self):
        self._process(self._source.when_failed)

    def details(self) -> Dict[str, Any]:
        res: Dict[str, Any] = {}
        overview = self.message.overview()
        if "from" in overview:
            res["emailed_from"] = overview["from"]
        if "date" in overview:
            res["emailed_date"] = str(overview["date"])
        return res

    def close(self):
        close = getattr(self.message, "close", None)
        if callable(close):
            close()

    def _process(self, actions: List[SourceAction]):
        for action in actions:
            if action.type == ActionType.MARK_SEEN:
                self.message.mark_seen()
            elif action.type == ActionType.MOVE_TO:
                self._source.mailbox.ensure_mailbox(action.param)
                self.message.move(action.param)
            elif action.type == ActionType.DELETE:
                self.message.delete()


class MailboxSource(Source):
    """Unseen messages of a mailbox folder, oldest first"""

    source_type = SourceType.MAILBOX

    def __init__(
        self,
        mailbox: MailBox,
        when_done: ActionSetting = None,
        when_failed: ActionSetting = None,
    ):
        self.mailbox = mailbox
        self.when_done = SourceAction.from_setting(when_done, 0, "mark_seen")
        self.when_failed = SourceAction.from_setting(when_failed, 0, "move_to:failed")

    def items(self) -> List[SourceItem]:
        messages = self.mailbox.messages(SearchCriteria.UNSEEN, SortOrder.ASCENDING)
        return [MailboxItem(self, message) for message in messages]

    def close(self):
        self.mailbox.expunge()
        self.mailbox.cleanup()


class DirectoryItem(SourceItem):
    def __init__(self, source: "DirectorySource", path: str):
        self._source = source
        self.path = path

    def open(self) -> ReportFile:
        return ReportFile.from_file(self.path)

    def accepted(self):
        self._process(self._source.when_done)

    def rejected(self):
        self._process(self._source.when_failed)

    def _process(self, actions: List[SourceAction]):
        for action in actions:
            if action.type == ActionType.DELETE:
                self._delete()
            elif action.type == ActionType.MOVE_TO:
                self._move(action.param)

    def _delete(self):
        try:
            os.remove(self.path)
        except OSError as e:
            message = "Error deleting file from directory {0}".format(
                self._source.location
            )
            logger.error(message)
            raise FetchError(message) from e

    def _move(self, dir_name: str):
        target_dir = os.path.join(self._source.location, dir_name)
        if not os.path.isdir(target_dir):
            try:
                os.mkdir(target_dir)
            except OSError as e:
                message = "Error creating directory {0}/".format(target_dir)
                logger.error(message)
                raise FetchError(message) from e
            try:
                os.chmod(target_dir, 0o700)
            except OSError as e:
                logger.error(e.__str__())
        try:
            os.rename(
                self.path, os.path.join(target_dir, os.path.basename(self.path))
            )
        except OSError as e:
            message = "Error moving file to directory {0}/".format(target_dir)
            logger.error(message)
            raise FetchError(message) from e


class DirectorySource(Source):
    """Report files in a local directory, not recursive"""

    source_type = SourceType.DIRECTORY

    def __init__(
        self,
        location: str,
        when_done: ActionSetting = None,
        when_failed: ActionSetting = None,
    ):
        self.location = location
        self.when_done = SourceAction.from_setting(when_done, FLAG_BASENAME, "delete")
        self.when_failed = SourceAction.from_setting(
            when_failed, FLAG_BASENAME, "move_to:failed"
        )

    def items(self) -> List[SourceItem]:
        if not os.path.isdir(self.location):
            raise SoftError("The {0} directory does not exist!".format(self.location))
        try:
            with os.scandir(self.location) as entries:
                paths = sorted(entry.path for entry in entries if entry.is_file())
        except OSError as e:
            raise FetchError(
                "Error accessing directory {0}".format(self.location)
            ) from e
        return [DirectoryItem(self, path) for path in paths]


class S3Body(io.RawIOBase):
    """Reads the body of an S3 object, wrapping transport errors"""

    def __init__(self, body, key: str):
        super().__init__()
        self._body = body
        self._key = key

    def readable(self):
        return True

    def readinto(self, b):
        try:
            data = self._body.read(len(b))
        except (BotoCoreError, ClientError) as e:
            raise ReportFileError(
                "Error reading file from remote filesystem: {0}".format(self._key)
            ) from e
        size = len(data)
        b[:size] = data
        return size

    def close(self):
        if not self.closed:
            self._body.close()
        super().close()


class S3Item(SourceItem):
    def __init__(self, source: "S3Source", key: str):
        self._source = source
        self.key = key

    def open(self) -> ReportFile:
        try:
            response = self._source.client.get_object(
                Bucket=self._source.bucket, Key=self.key
            )
        except (BotoCoreError, ClientError) as e:
            raise FetchError(
                "Error reading file from remote filesystem: {0}".format(self.key)
            ) from e
        return ReportFile.from_stream(
            io.BufferedReader(S3Body(response["Body"], self.key)),
            posixpath.basename(self.key),
        )

    def accepted(self):
        self._process(self._source.when_done)

    def rejected(self):
        self._process(self._source.when_failed)

    def _process(self, actions: List[SourceAction]):
        for action in actions:
            if action.type == ActionType.DELETE:
                self._delete()
            elif action.type == ActionType.MOVE_TO:
                self._move(action.param)

    def _delete(self):
        try:
            self._source.client.delete_object(Bucket=self._source.bucket, Key=self.key)
        except (BotoCoreError, ClientError) as e:
            message = "Error deleting file from remote filesystem: {0}".format(
                self.key
            )
            logger.error(message)
            raise FetchError(message) from e

    def _move(self, dir_name: str):
        target = posixpath.join(
            posixpath.dirname(self.key), dir_name, posixpath.basename(self.key)
        )
        bucket = self._source.bucket
        try:
            self._source.client.copy_object(
                Bucket=bucket,
                Key=target,
                CopySource={"Bucket": bucket, "Key": self.key},
            )
            self._source.client.delete_object(Bucket=bucket, Key=self.key)
        except (BotoCoreError, ClientError) as e:
            message = (
                "Error moving file within remote filesystem: "
                "{0} to {1}".format(self.key, target)
            )
            logger.error(message)
            raise FetchError(message) from e


class S3Source(Source):
    """Report files in an S3 bucket, not recursive"""

    source_type = SourceType.REMOTE_FILESYSTEM

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        *,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        when_done: ActionSetting = None,
        when_failed: ActionSetting = None,
        client=None,
    ):
        """
        Args:
            bucket (str): The S3 bucket
            prefix (str): The path of the report files in the bucket
            region_name (str): The region name
            endpoint_url (str): The endpoint URL
            access_key_id (str): The access key id
            secret_access_key (str): The secret access key
            when_done: Actions applied to processed files
            when_failed: Actions applied to rejected files
            client: An existing boto3 S3 client
        """
        self.bucket = bucket
        if prefix and not prefix.endswith("/"):
            prefix += "/"
        self.prefix = prefix
        self.when_done = SourceAction.from_setting(when_done, FLAG_BASENAME, "delete")
        self.when_failed = SourceAction.from_setting(
            when_failed, FLAG_BASENAME, "move_to:failed"
        )
        if client is None:
            try:
                client = boto3.client(
                    "s3",
                    region_name=region_name,
                    endpoint_url=endpoint_url,
                    aws_access_key_id=access_key_id,
                    aws_secret_access_key=secret_access_key,
                )
            except (BotoCoreError, ValueError) as e:
                raise ConfigurationError(
                    "Cannot create the S3 client: {0}".format(e.__str__())
                ) from e
        self.client = client

    def items(self) -> List[SourceItem]:
        keys: List[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(
                Bucket=self.bucket, Prefix=self.prefix, Delimiter="/"
            ):
                for obj in page.get("Contents", []):
                    if not obj["Key"].endswith("/"):
                        keys.append(obj["Key"])
        except (BotoCoreError, ClientError) as e:
            raise FetchError(
                "Error accessing remote filesystem: {0}".format(self.bucket)
            ) from e
        return [S3Item(self, key) for key in keys]
