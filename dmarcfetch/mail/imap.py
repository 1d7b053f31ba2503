# -*- coding: utf-8 -*-

from __future__ import annotations

import email
import email.policy
import re
from email.header import decode_header, make_header
from email.message import Message
from ssl import CERT_NONE, create_default_context
from typing import Any, Dict, List, Optional, Tuple

from imapclient import SEEN, IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from dmarcfetch.errors import (
    ConfigurationError,
    MailboxError,
    SoftError,
    exception_result,
)
from dmarcfetch.log import logger
from dmarcfetch.mail.mailbox import (
    MailAttachment,
    MailBox,
    MailMessage,
    SearchCriteria,
    SortOrder,
)

IMAP_ERRORS = (IMAPClientError, OSError)

ENCRYPTION_METHODS = ("ssl", "starttls", "none")
AUTH_METHODS = ("plain", "oauth")

host_port_regex = re.compile(r"^(.+):(\d+)$")


def _decode_header_value(value) -> str:
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    try:
        return str(make_header(decode_header(value)))
    except (LookupError, ValueError):
        return value


def _message_timestamp(date) -> float:
    if date is None:
        return 0.0
    try:
        return date.timestamp()
    except (OverflowError, OSError, ValueError):
        return 0.0


class IMAPMessage(MailMessage):
    """A message in an IMAP folder"""

    def __init__(self, mailbox: "IMAPMailBox", uid: int, data: Dict[bytes, Any]):
        self._mailbox = mailbox
        self._uid = uid
        self._data = data
        self._message: Optional[Message] = None
        self._attachments: List[Message] = []
        self._attachment: Optional[MailAttachment] = None

    @property
    def uid(self) -> int:
        return self._uid

    def overview(self) -> Dict[str, Any]:
        res: Dict[str, Any] = {}
        envelope = self._data.get(b"ENVELOPE")
        if envelope is None:
            return res
        if envelope.from_:
            address = envelope.from_[0]
            if address.name:
                res["from"] = _decode_header_value(address.name)
            elif address.mailbox and address.host:
                res["from"] = "{0}@{1}".format(
                    _decode_header_value(address.mailbox),
                    _decode_header_value(address.host),
                )
        if envelope.date is not None:
            res["date"] = envelope.date
        return res

    def date(self):
        envelope = self._data.get(b"ENVELOPE")
        if envelope is not None and envelope.date is not None:
            return envelope.date
        return self._data.get(b"INTERNALDATE")

    def attachment_count(self) -> int:
        self._ensure_body()
        return len(self._attachments)

    def attachment(self) -> MailAttachment:
        if self._attachment is None:
            self._ensure_body()
            if len(self._attachments) == 0:
                raise SoftError("The message has no attachment")
            self._attachment = MailAttachment(self._attachments[0])
        return self._attachment

    def mark_seen(self):
        try:
            self._mailbox.client.add_flags([self._uid], [SEEN])
        except IMAP_ERRORS as e:
            self._mailbox.command_failed(e)
            raise MailboxError("IMAP: Cannot mark a message") from e

    def move(self, target_folder: str):
        target_path = self._mailbox.folder_path(target_folder)
        client = self._mailbox.client
        try:
            if client.has_capability("MOVE"):
                client.move([self._uid], target_path)
            else:
                client.copy([self._uid], target_path)
                client.delete_messages([self._uid])
        except IMAP_ERRORS as e:
            self._mailbox.command_failed(e)
            raise MailboxError("IMAP: Cannot move a message") from e
        self._mailbox.queue_expunge(self._uid, "move")

    def delete(self):
        try:
            self._mailbox.client.delete_messages([self._uid])
        except IMAP_ERRORS as e:
            self._mailbox.command_failed(e)
            raise MailboxError("IMAP: Cannot delete a message") from e
        self._mailbox.queue_expunge(self._uid, "delete")

    def close(self):
        if self._attachment is not None:
            self._attachment.close()
            self._attachment = None

    def _ensure_body(self):
        if self._message is not None:
            return
        raw = self._mailbox.fetch_body(self._uid)
        if raw is None:
            raise SoftError("The message not found")
        self._message = email.message_from_bytes(raw, policy=email.policy.default)
        self._attachments = [
            part
            for part in self._message.walk()
            if not part.is_multipart() and part.get_filename()
        ]


class IMAPMailBox(MailBox):
    """A folder of an IMAP mailbox"""

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        mailbox: str = "INBOX",
        *,
        name: Optional[str] = None,
        encryption: str = "ssl",
        novalidate_cert: bool = False,
        auth_method: str = "plain",
        timeout: float = 30,
    ):
        """
        Args:
            host (str): The server hostname, optionally followed by a colon
                and a port number
            username (str): The user name
            password (str): The password, or the OAuth token when
                ``auth_method`` is ``oauth``
            mailbox (str): The full path of the folder
            name (str): A display name, the local part of the user name
                by default
            encryption (str): ``ssl``, ``starttls`` or ``none``
            novalidate_cert (bool): Skip certificate verification
            auth_method (str): ``plain`` or ``oauth``
            timeout (float): Socket timeout in seconds
        """
        if encryption not in ENCRYPTION_METHODS:
            raise ConfigurationError(
                "Unknown encryption method: {0}".format(encryption)
            )
        self._host = host
        self._username = username
        self._password = password
        self._mailbox = mailbox
        self._encryption = encryption
        self._novalidate_cert = novalidate_cert
        self._auth_method = auth_method
        self._timeout = timeout
        if name:
            self._name = name
        else:
            pos = username.find("@")
            self._name = username[:pos] if pos > 0 else username
        self._client: Optional[IMAPClient] = None
        self._connected = False
        self._delimiter = "/"
        self._pending: List[Tuple[int, str]] = []

    def name(self) -> str:
        return self._name

    def host(self) -> str:
        return self._host

    def folder(self) -> str:
        return self._mailbox

    @property
    def client(self) -> IMAPClient:
        """The connected client, the connection is established if needed"""
        self._ensure_connection()
        return self._client

    @property
    def connected(self) -> bool:
        return self._client is not None and self._connected

    @property
    def pending_expunge(self) -> Tuple[Tuple[int, str], ...]:
        """Messages moved or deleted since the last expunge"""
        return tuple(self._pending)

    def queue_expunge(self, uid: int, operation: str):
        self._pending.append((uid, operation))

    def folder_path(self, name: str) -> str:
        """Returns the full path of a child folder"""
        self._ensure_connection()
        return "{0}{1}{2}".format(self._mailbox, self._delimiter, name)

    def command_failed(self, error: Exception):
        """Logs a failed command and forgets the connection if it is broken"""
        logger.error("IMAP error: {0}".format(error.__str__()))
        if isinstance(error, (IMAPClientAbortError, OSError)):
            self._connected = False

    def check(self) -> Dict[str, Any]:
        try:
            self._ensure_connection()
            try:
                status = self._client.folder_status(
                    self._mailbox, [b"MESSAGES", b"UNSEEN"]
                )
                flags = self._folder_flags(self._mailbox)
            except IMAP_ERRORS as e:
                self.command_failed(e)
                raise MailboxError("Failed to get mailbox status") from e
            if "\\noinferiors" in flags:
                raise MailboxError("The mailbox may not have any children mailboxes")
            if "\\noselect" in flags:
                raise MailboxError("The resource is not a mailbox")
        except (MailboxError, ConfigurationError) as e:
            return exception_result(e)
        return {
            "error_code": 0,
            "message": "Successfully",
            "status": {
                "messages": status.get(b"MESSAGES", 0),
                "unseen": status.get(b"UNSEEN", 0),
            },
        }

    def messages(
        self,
        search_criteria: SearchCriteria = SearchCriteria.ALL,
        sort_order: SortOrder = SortOrder.ASCENDING,
    ) -> List[IMAPMessage]:
        if search_criteria == SearchCriteria.ALL:
            criteria = "ALL"
        elif search_criteria == SearchCriteria.SEEN:
            criteria = "SEEN"
        elif search_criteria == SearchCriteria.UNSEEN:
            criteria = "UNSEEN"
        else:
            raise ConfigurationError("Wrong search criteria value")
        if sort_order not in (SortOrder.ASCENDING, SortOrder.DESCENDING):
            raise ConfigurationError("Wrong sort criteria value")

        client = self.client
        try:
            uids = client.search(criteria)
            if not uids:
                return []
            response = client.fetch(uids, ["ENVELOPE", "INTERNALDATE"])
        except IMAP_ERRORS as e:
            self.command_failed(e)
            raise MailboxError("IMAP: Failed to search messages") from e
        logger.debug(
            "Found {0} messages in {1}".format(len(response), self._mailbox)
        )

        # The server side SORT extension is not available everywhere
        messages = [IMAPMessage(self, uid, data) for uid, data in response.items()]
        messages.sort(
            key=lambda message: _message_timestamp(message.date()),
            reverse=sort_order == SortOrder.DESCENDING,
        )
        return messages

    def fetch_body(self, uid: int) -> Optional[bytes]:
        """Fetches the full message, without marking it as seen"""
        client = self.client
        try:
            response = client.fetch([uid], ["BODY.PEEK[]"])
        except IMAP_ERRORS as e:
            self.command_failed(e)
            raise MailboxError("IMAP: Failed to fetch a message") from e
        if uid not in response:
            return None
        return response[uid].get(b"BODY[]")

    def child_mailbox(self, name: str) -> "IMAPMailBox":
        return IMAPMailBox(
            self._host,
            self._username,
            self._password,
            self.folder_path(name),
            name=self._name,
            encryption=self._encryption,
            novalidate_cert=self._novalidate_cert,
            auth_method=self._auth_method,
            timeout=self._timeout,
        )

    def ensure_mailbox(self, name: str):
        path = self.folder_path(name)
        try:
            if self._client.folder_exists(path):
                return
            logger.debug("Creating folder {0}".format(path))
            self._client.create_folder(path)
            self._client.subscribe_folder(path)
        except IMAP_ERRORS as e:
            self.command_failed(e)
            raise MailboxError("IMAP: Cannot create a mailbox folder") from e

    def expunge(self):
        if not self.connected:
            return
        try:
            self._client.expunge()
            self._pending = []
        except IMAP_ERRORS as e:
            self.command_failed(e)

    def cleanup(self):
        if self._client is None:
            return
        try:
            if self._connected:
                self._client.logout()
            else:
                self._client.shutdown()
        except IMAP_ERRORS as e:
            logger.error("IMAP error: {0}".format(e.__str__()))
        finally:
            self._client = None
            self._connected = False

    def _folder_flags(self, path: str) -> List[str]:
        flags: List[str] = []
        for folder_flags, _delimiter, folder_name in self._client.list_folders(
            pattern=path
        ):
            if folder_name == path:
                flags.extend(
                    (f.decode() if isinstance(f, bytes) else f).lower()
                    for f in folder_flags
                )
        return flags

    def _ensure_connection(self):
        if self.connected:
            return
        # Release a connection that was broken by an earlier command
        self.cleanup()

        match = host_port_regex.match(self._host)
        if match:
            host = match.group(1)
            port: Optional[int] = int(match.group(2))
        else:
            host = self._host
            port = None
        if self._auth_method not in AUTH_METHODS:
            raise ConfigurationError("Unknown authentication method")

        ssl_context = create_default_context()
        if self._novalidate_cert:
            ssl_context.check_hostname = False
            ssl_context.verify_mode = CERT_NONE

        try:
            self._client = IMAPClient(
                host,
                port=port,
                ssl=self._encryption == "ssl",
                ssl_context=ssl_context,
                timeout=self._timeout,
            )
            if self._encryption == "starttls":
                self._client.starttls(ssl_context)
            if self._auth_method == "oauth":
                self._client.oauth2_login(self._username, self._password)
            else:
                self._client.login(self._username, self._password)
        except LoginError as e:
            logger.error("IMAP error: {0}".format(e.__str__()))
            self._client = None
            raise MailboxError("IMAP: Authentication failed") from e
        except IMAP_ERRORS as e:
            logger.error("IMAP error: {0}".format(e.__str__()))
            self._client = None
            raise MailboxError("IMAP: Connection failed") from e
        self._connected = True

        try:
            folders = self._client.list_folders(pattern=self._mailbox)
            folder = next((f for f in folders if f[2] == self._mailbox), None)
            if folder is None:
                self.cleanup()
                raise MailboxError("IMAP: Mailbox `{0}` not found".format(self._mailbox))
            if folder[1]:
                delimiter = folder[1]
                if isinstance(delimiter, bytes):
                    delimiter = delimiter.decode()
                self._delimiter = delimiter
            self._client.select_folder(self._mailbox)
        except IMAP_ERRORS as e:
            self.command_failed(e)
            self.cleanup()
            raise MailboxError("IMAP: Cannot select mailbox") from e
