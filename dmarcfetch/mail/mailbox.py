# -*- coding: utf-8 -*-

from __future__ import annotations

import tempfile
from abc import ABC
from email.message import Message
from enum import Enum
from typing import Any, BinaryIO, Dict, List, Optional

from dmarcfetch.constants import MAGIC_XML, MIME_TYPE_UNKNOWN
from dmarcfetch.report_file import get_mime_type, sniff_mime_type

# Attachments bigger than this are spooled to disk
MAX_MEMORY_BUFFER = 2 * 1024 * 1024


class SearchCriteria(Enum):
    ALL = 1
    SEEN = 2
    UNSEEN = 3


class SortOrder(Enum):
    ASCENDING = 1
    DESCENDING = 2


class MailAttachment(object):
    """An attachment of an email message, as a report file source"""

    def __init__(self, part: Message):
        self._part = part
        self._mime_type: Optional[str] = None
        self._mime_type_loaded = False
        self._size = -1
        self._size_loaded = False
        self._stream: Optional[BinaryIO] = None

    def mime_type(self) -> str:
        if not self._mime_type_loaded:
            mime_type = self._part.get_content_type()
            if mime_type == MIME_TYPE_UNKNOWN:
                stream = self.stream()
                header = stream.read(len(MAGIC_XML))
                stream.seek(0)
                mime_type = sniff_mime_type(header) or get_mime_type(
                    self.filename()
                )
            self._mime_type = mime_type
            self._mime_type_loaded = True
        return self._mime_type

    def size(self) -> int:
        if not self._size_loaded:
            size = self._declared_size()
            if size is None:
                stream = self._materialize()
                stream.seek(0, 2)
                size = stream.tell()
                stream.seek(0)
            self._size = size
            self._size_loaded = True
        return self._size

    def filename(self) -> Optional[str]:
        return self._part.get_filename()

    def stream(self) -> BinaryIO:
        """
        Returns the decoded attachment content. Every call rewinds the
        stream to the beginning.
        """
        stream = self._materialize()
        stream.seek(0)
        return stream

    def close(self):
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    def _declared_size(self) -> Optional[int]:
        # RFC 2183 size parameter
        size = self._part.get_param("size", header="content-disposition")
        if not isinstance(size, str):
            return None
        try:
            return int(size)
        except ValueError:
            return None

    def _materialize(self) -> BinaryIO:
        if self._stream is None or self._stream.closed:
            stream = tempfile.SpooledTemporaryFile(max_size=MAX_MEMORY_BUFFER)
            payload = self._part.get_payload(decode=True)
            if isinstance(payload, bytes):
                stream.write(payload)
            self._stream = stream
        return self._stream


class MailMessage(ABC):
    """
    Interface for a message in a mailbox
    """

    def overview(self) -> Dict[str, Any]:
        raise NotImplementedError

    def attachment_count(self) -> int:
        raise NotImplementedError

    def attachment(self) -> MailAttachment:
        raise NotImplementedError

    def mark_seen(self):
        raise NotImplementedError

    def move(self, target_folder: str):
        raise NotImplementedError

    def delete(self):
        raise NotImplementedError


class MailBox(ABC):
    """
    Interface for a mailbox folder
    """

    def name(self) -> str:
        raise NotImplementedError

    def host(self) -> str:
        raise NotImplementedError

    def folder(self) -> str:
        raise NotImplementedError

    def check(self) -> Dict[str, Any]:
        raise NotImplementedError

    def messages(
        self, search_criteria: SearchCriteria, sort_order: SortOrder
    ) -> List[MailMessage]:
        raise NotImplementedError

    def child_mailbox(self, name: str) -> "MailBox":
        raise NotImplementedError

    def ensure_mailbox(self, name: str):
        raise NotImplementedError

    def expunge(self):
        raise NotImplementedError

    def cleanup(self):
        raise NotImplementedError
