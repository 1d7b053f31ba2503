import base64
import email
import email.policy
import gzip
import io
import json
import os
import struct
import tempfile
import unittest
import zipfile
import zlib
from datetime import datetime, timezone
from unittest import mock

from botocore.exceptions import BotoCoreError, ClientError
from imapclient.exceptions import IMAPClientError, LoginError
from imapclient.response_types import Address, Envelope

import dmarcfetch
import dmarcfetch.utils
from dmarcfetch.config import load_config
from dmarcfetch.errors import (
    ConfigurationError,
    FetchError,
    InvalidReport,
    MailboxError,
    ReportFileError,
    SoftError,
    exception_result,
)
from dmarcfetch.fetcher import ReportFetcher, make_summary_result
from dmarcfetch.mail import IMAPMailBox, IMAPMessage, MailAttachment
from dmarcfetch.mail import SearchCriteria, SortOrder
from dmarcfetch.report_file import (
    FLAG_FCOMMENT,
    FLAG_FEXTRA,
    FLAG_FHCRC,
    FLAG_FNAME,
    GzipCutFilter,
    GzipCutReader,
    InflateReader,
    ReportFile,
    get_mime_type,
    open_gzip_stream,
)
from dmarcfetch.sources import (
    FLAG_BASENAME,
    ActionType,
    DirectorySource,
    MailboxSource,
    S3Source,
    SourceAction,
    UploadedFilesSource,
)
from dmarcfetch.storage import JSONReportStorage, parse_report_metadata

REPORT_TEMPLATE = """<?xml version="1.0" encoding="UTF-8" ?>
<feedback>
  <report_metadata>
    <org_name>example.net</org_name>
    <email>noreply-dmarc-support@example.net</email>
    <report_id>{report_id}</report_id>
    <date_range>
      <begin>1577836800</begin>
      <end>1577923199</end>
    </date_range>
  </report_metadata>
  <policy_published>
    <domain>{domain}</domain>
    <adkim>r</adkim>
    <aspf>r</aspf>
    <p>none</p>
    <sp>none</sp>
    <pct>100</pct>
  </policy_published>
  <record>
    <row>
      <source_ip>192.0.2.1</source_ip>
      <count>2</count>
      <policy_evaluated>
        <disposition>none</disposition>
        <dkim>pass</dkim>
        <spf>pass</spf>
      </policy_evaluated>
    </row>
    <identifiers>
      <header_from>{domain}</header_from>
    </identifiers>
    <auth_results>
      <dkim>
        <domain>{domain}</domain>
        <result>pass</result>
      </dkim>
      <spf>
        <domain>{domain}</domain>
        <result>pass</result>
      </spf>
    </auth_results>
  </record>
</feedback>
"""


def make_report(report_id="9391651994964116463", domain="example.com"):
    return REPORT_TEMPLATE.format(report_id=report_id, domain=domain).encode(
        "utf-8"
    )


def make_gzip(data, flags=0, extra=b"", fname=b"", comment=b""):
    """Builds a gzip member by hand, returns it with its deflate data"""
    header = b"\x1f\x8b\x08" + bytes([flags]) + b"\x00\x00\x00\x00\x00\x03"
    if flags & FLAG_FEXTRA:
        header += struct.pack("<H", len(extra)) + extra
    if flags & FLAG_FNAME:
        header += fname + b"\x00"
    if flags & FLAG_FCOMMENT:
        header += comment + b"\x00"
    if flags & FLAG_FHCRC:
        header += struct.pack("<H", zlib.crc32(header) & 0xFFFF)
    compressor = zlib.compressobj(9, zlib.DEFLATED, -zlib.MAX_WBITS)
    body = compressor.compress(data) + compressor.flush()
    trailer = struct.pack("<II", zlib.crc32(data) & 0xFFFFFFFF, len(data))
    return header + body + trailer, header, body


def make_zip(entries, compression=zipfile.ZIP_DEFLATED):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression) as archive:
        for name, data in entries:
            archive.writestr(name, data)
    return buffer.getvalue()


def make_email(attachment=None, filename="report.xml.gz",
               content_type="application/gzip", disposition_params=""):
    lines = [
        b"From: Example Reports <noreply-dmarc-support@example.net>",
        b"To: dmarc@example.com",
        b"Subject: Report Domain: example.com Submitter: example.net",
        b"Date: Wed, 01 Jan 2020 12:00:00 +0000",
        b"MIME-Version: 1.0",
        b'Content-Type: multipart/mixed; boundary="BOUNDARY"',
        b"",
        b"--BOUNDARY",
        b"Content-Type: text/plain; charset=utf-8",
        b"",
        b"This is an aggregate report from example.net.",
    ]
    if attachment is not None:
        lines += [
            b"--BOUNDARY",
            "Content-Type: {0}".format(content_type).encode(),
            'Content-Disposition: attachment; filename="{0}"{1}'.format(
                filename, disposition_params).encode(),
            b"Content-Transfer-Encoding: base64",
            b"",
            base64.b64encode(attachment),
        ]
    lines += [b"--BOUNDARY--", b""]
    return b"\r\n".join(lines)


def attachment_part(raw):
    message = email.message_from_bytes(raw, policy=email.policy.default)
    return [part for part in message.walk() if part.get_filename()][0]


def make_envelope(day, name=b"Example Reports"):
    date = datetime(2020, 1, day, 12, 0, tzinfo=timezone.utc)
    sender = (Address(name, None, b"noreply-dmarc-support", b"example.net"),)
    return Envelope(date, b"Report", sender, sender, sender,
                    None, None, None, None, b"<id@example.net>")


class NonSeekableStream(io.RawIOBase):
    """A stream that can only be read forward, like a network response"""

    def __init__(self, data):
        super().__init__()
        self._data = io.BytesIO(data)

    def readable(self):
        return True

    def readinto(self, b):
        chunk = self._data.read(len(b))
        b[:len(chunk)] = chunk
        return len(chunk)


def mock_imap_client(client_class, folder_flags=(b"\\HasNoChildren",)):
    client = client_class.return_value
    client.list_folders.return_value = [(folder_flags, b"/", "INBOX")]
    client.has_capability.return_value = True
    return client


class Test(unittest.TestCase):
    def testGzipCutFilterChunking(self):
        """Test that the filter output does not depend on the chunk sizes"""
        print()
        data = make_report() * 20
        full, header, body = make_gzip(data, FLAG_FNAME, fname=b"report.xml")
        payload = full[len(header):]
        for chunk_size in (1, 7, 4096, len(full)):
            cut_filter = GzipCutFilter()
            output = b""
            fed = 0
            for pos in range(0, len(full), chunk_size):
                chunk = full[pos:pos + chunk_size]
                output += cut_filter.feed(chunk)
                fed += len(chunk)
                # The last 8 bytes seen are always held back
                expected = max(0, fed - len(header) - 8)
                self.assertEqual(output, payload[:expected])
            self.assertTrue(cut_filter.header_consumed)
            self.assertEqual(output, body)
            self.assertEqual(zlib.decompress(output, -zlib.MAX_WBITS), data)
        print("Passed!")

    def testGzipCutFilterHeaderFlags(self):
        """Test the optional sections of the gzip header"""
        print()
        data = make_report()
        flag_sets = [
            0,
            FLAG_FEXTRA,
            FLAG_FNAME,
            FLAG_FCOMMENT,
            FLAG_FHCRC,
            FLAG_FEXTRA | FLAG_FNAME | FLAG_FCOMMENT | FLAG_FHCRC,
        ]
        for flags in flag_sets:
            full, header, body = make_gzip(
                data, flags, extra=b"AB\x04\x00test", fname=b"report.xml",
                comment=b"DMARC aggregate report")
            for chunk_size in (1, 3, len(full)):
                cut_filter = GzipCutFilter()
                output = b"".join(
                    cut_filter.feed(full[pos:pos + chunk_size])
                    for pos in range(0, len(full), chunk_size))
                self.assertEqual(output, body)
        print("Passed!")

    def testGzipCutFilterIncompleteHeader(self):
        """Test that nothing is emitted while the header is incomplete"""
        print()
        full, header, body = make_gzip(make_report(), FLAG_FNAME,
                                       fname=b"report.xml")
        cut_filter = GzipCutFilter()
        self.assertEqual(cut_filter.feed(full[:6]), b"")
        self.assertFalse(cut_filter.header_consumed)
        # The file name is not terminated yet
        self.assertEqual(cut_filter.feed(full[6:15]), b"")
        self.assertFalse(cut_filter.header_consumed)
        output = cut_filter.feed(full[15:])
        self.assertTrue(cut_filter.header_consumed)
        self.assertEqual(output, body)
        print("Passed!")

    def testGzipCutFilterShortInput(self):
        """Test data shorter than the trailer"""
        print()
        cut_filter = GzipCutFilter()
        header = b"\x1f\x8b\x08\x00\x00\x00\x00\x00\x00\x03"
        self.assertEqual(cut_filter.feed(header + b"1234567"), b"")
        self.assertEqual(cut_filter.feed(b"8"), b"")
        self.assertEqual(cut_filter.feed(b"9"), b"1")
        print("Passed!")

    def testGzipStreamReaders(self):
        """Test the stream adapters on a non-seekable stream"""
        print()
        data = make_report() * 50
        compressed = gzip.compress(data)
        for chunk_size in (1, 7, 4096):
            reader = InflateReader(
                GzipCutReader(NonSeekableStream(compressed), chunk_size),
                chunk_size)
            self.assertEqual(reader.read(), data)
            reader.close()
        stream = open_gzip_stream(NonSeekableStream(compressed))
        self.assertEqual(stream.read(100), data[:100])
        self.assertEqual(stream.read(), data[100:])
        stream.close()
        print("Passed!")

    def testGzipStreamCorrupted(self):
        """Test that invalid deflate data raises a report file error"""
        print()
        header = b"\x1f\x8b\x08\x00\x00\x00\x00\x00\x00\x03"
        stream = open_gzip_stream(io.BytesIO(header + b"\xff" * 32 + b"\x00" * 8))
        with self.assertRaises(ReportFileError):
            stream.read()
        print("Passed!")

    def testGetMimeType(self):
        """Test MIME type detection by content and by extension"""
        print()
        zip_data = make_zip([("report.xml", make_report())])
        self.assertEqual(get_mime_type("report.xml", io.BytesIO(zip_data)),
                         "application/zip")
        self.assertEqual(get_mime_type("report",
                                       io.BytesIO(gzip.compress(b"test"))),
                         "application/gzip")
        self.assertEqual(get_mime_type(None, io.BytesIO(make_report())),
                         "text/xml")
        self.assertEqual(get_mime_type("report.xml.gz",
                                       io.BytesIO(b"unknown content")),
                         "application/gzip")
        self.assertEqual(get_mime_type("REPORT.XML"), "text/xml")
        self.assertEqual(get_mime_type("report.zip"), "application/zip")
        self.assertEqual(get_mime_type("report.txt"),
                         "application/octet-stream")
        self.assertEqual(get_mime_type(None), "application/octet-stream")
        print("Passed!")

    def testGetMimeTypeDoesNotConsume(self):
        """Test that sniffing leaves the stream at its position"""
        print()
        stream = io.BytesIO(make_report())
        self.assertEqual(get_mime_type("report", stream), "text/xml")
        self.assertEqual(stream.tell(), 0)
        buffered = io.BufferedReader(NonSeekableStream(make_report()))
        self.assertEqual(get_mime_type("report", buffered), "text/xml")
        self.assertEqual(buffered.read(), make_report())
        # Neither peekable nor seekable, only the extension is used
        raw = NonSeekableStream(gzip.compress(b"test"))
        self.assertEqual(get_mime_type("report.xml", raw), "text/xml")
        self.assertEqual(gzip.decompress(raw.read()), b"test")
        print("Passed!")

    def testReportFileFromFiles(self):
        """Test report files on disk"""
        print()
        data = make_report()
        with tempfile.TemporaryDirectory() as tmp_dir:
            xml_path = os.path.join(tmp_dir, "report.xml")
            with open(xml_path, "wb") as f:
                f.write(data)
            gz_path = os.path.join(tmp_dir, "report.xml.gz")
            with open(gz_path, "wb") as f:
                f.write(gzip.compress(data))
            zip_path = os.path.join(tmp_dir, "report.zip")
            with open(zip_path, "wb") as f:
                f.write(make_zip([("report.xml", data)]))
            plain_gz_path = os.path.join(tmp_dir, "plain.gz")
            with open(plain_gz_path, "wb") as f:
                f.write(b"plain text")

            with ReportFile.from_file(xml_path) as report_file:
                self.assertEqual(report_file.filename, "report.xml")
                self.assertEqual(report_file.mime_type, "text/xml")
                self.assertEqual(report_file.read(), data)
            with ReportFile.from_file(gz_path, "upload.gz") as report_file:
                self.assertEqual(report_file.filename, "upload.gz")
                self.assertEqual(report_file.mime_type, "application/gzip")
                self.assertEqual(report_file.read(), data)
            with ReportFile.from_file(zip_path) as report_file:
                self.assertEqual(report_file.mime_type, "application/zip")
                self.assertEqual(report_file.stream().read(), data)
            # Not compressed after all, read as is
            with ReportFile.from_file(plain_gz_path) as report_file:
                self.assertEqual(report_file.mime_type, "application/gzip")
                self.assertEqual(report_file.read(), b"plain text")

            # Files passed by the caller are kept unless asked otherwise
            self.assertTrue(os.path.exists(xml_path))
            ReportFile.from_file(xml_path, remove=True).close()
            self.assertFalse(os.path.exists(xml_path))

            with self.assertRaises(ReportFileError):
                ReportFile.from_file(tmp_dir)
        print("Passed!")

    def testReportFileZipStream(self):
        """Test a zip archive read from a stream"""
        print()
        data = make_report()
        zip_data = make_zip([("report.xml", data)])
        report_file = ReportFile.from_stream(NonSeekableStream(zip_data),
                                             "report.zip")
        self.assertEqual(report_file.mime_type, "application/zip")
        tmp_path = report_file._filepath
        self.assertTrue(os.path.exists(tmp_path))
        self.assertEqual(report_file.read(), data)
        report_file.close()
        self.assertFalse(os.path.exists(tmp_path))
        print("Passed!")

    def testReportFileZipEntries(self):
        """Test archives that do not contain exactly one report"""
        print()
        data = make_report()
        archives = {
            "The archive must have only one file in it": make_zip(
                [("a.xml", data), ("b.xml", data)]),
            "There must not be any directories in the archive": make_zip(
                [("reports/report.xml", data)]),
        }
        for message, zip_data in archives.items():
            with ReportFile.from_stream(io.BytesIO(zip_data),
                                        "report.zip") as report_file:
                with self.assertRaises(ReportFileError) as context:
                    report_file.stream()
                self.assertEqual(str(context.exception), message)

        with ReportFile.from_stream(io.BytesIO(make_zip([])),
                                    "report.zip") as report_file:
            with self.assertRaises(ReportFileError):
                report_file.stream()

        corrupted = b"PK\x03\x04" + b"\x00" * 40
        with ReportFile.from_stream(io.BytesIO(corrupted),
                                    "report.zip") as report_file:
            with self.assertRaises(ReportFileError) as context:
                report_file.stream()
            self.assertEqual(str(context.exception),
                             "Failed to open a report file")
        print("Passed!")

    def testReportFileGzipStream(self):
        """Test a gzip stream that cannot seek"""
        print()
        data = make_report()
        stream = NonSeekableStream(gzip.compress(data))
        with ReportFile.from_stream(stream, "report.xml.gz") as report_file:
            self.assertEqual(report_file.mime_type, "application/gzip")
            self.assertEqual(report_file.read(), data)
        self.assertTrue(stream.closed)

        # A declared type is used without sniffing
        with ReportFile.from_stream(io.BytesIO(data), "report",
                                    "text/xml") as report_file:
            self.assertEqual(report_file.mime_type, "text/xml")
            self.assertEqual(report_file.read(), data)
        print("Passed!")

    def testMailAttachment(self):
        """Test email attachments"""
        print()
        data = gzip.compress(make_report())
        attachment = MailAttachment(attachment_part(make_email(data)))
        self.assertEqual(attachment.filename(), "report.xml.gz")
        self.assertEqual(attachment.mime_type(), "application/gzip")
        self.assertEqual(attachment.size(), len(data))
        self.assertEqual(attachment.stream().read(), data)
        # Every call rewinds the stream
        self.assertEqual(attachment.stream().read(), data)
        attachment.close()
        self.assertEqual(attachment.stream().read(), data)
        attachment.close()
        print("Passed!")

    def testMailAttachmentMimeSniffing(self):
        """Test attachments declared as application/octet-stream"""
        print()
        zip_data = make_zip([("report.xml", make_report())])
        raw = make_email(zip_data, "report.bin", "application/octet-stream")
        attachment = MailAttachment(attachment_part(raw))
        self.assertEqual(attachment.mime_type(), "application/zip")
        self.assertEqual(attachment.stream().read(), zip_data)

        raw = make_email(b"unknown content", "report.xml",
                         "application/octet-stream")
        attachment = MailAttachment(attachment_part(raw))
        self.assertEqual(attachment.mime_type(), "text/xml")

        raw = make_email(b"unknown content", "report.bin",
                         "application/octet-stream")
        attachment = MailAttachment(attachment_part(raw))
        self.assertEqual(attachment.mime_type(), "application/octet-stream")
        print("Passed!")

    def testMailAttachmentDeclaredSize(self):
        """Test the size parameter of the Content-Disposition header"""
        print()
        raw = make_email(b"some data", disposition_params="; size=123")
        attachment = MailAttachment(attachment_part(raw))
        self.assertEqual(attachment.size(), 123)
        print("Passed!")

    def testSourceActions(self):
        """Test parsing of action settings"""
        print()
        self.assertEqual(SourceAction.from_setting("mark_seen"),
                         [SourceAction(ActionType.MARK_SEEN)])
        self.assertEqual(SourceAction.from_setting("mark_seen:"),
                         [SourceAction(ActionType.MARK_SEEN)])
        setting = ["move_to:failed", "delete", "move_to:failed", "bogus",
                   "mark_seen:param", "delete:param", "move_to:", 5,
                   "move_to:done", "delete"]
        self.assertEqual(SourceAction.from_setting(setting), [
            SourceAction(ActionType.MOVE_TO, "failed"),
            SourceAction(ActionType.DELETE),
            SourceAction(ActionType.MOVE_TO, "done"),
        ])
        self.assertEqual(
            SourceAction.from_setting(["move_to:a/b", "move_to:ok"],
                                      FLAG_BASENAME),
            [SourceAction(ActionType.MOVE_TO, "ok")])
        self.assertEqual(
            SourceAction.from_setting(["move_to:a/b"]),
            [SourceAction(ActionType.MOVE_TO, "a/b")])
        print("Passed!")

    def testSourceActionDefaults(self):
        """Test that the default is used only for empty settings"""
        print()
        self.assertEqual(SourceAction.from_setting(None, 0, "mark_seen"),
                         [SourceAction(ActionType.MARK_SEEN)])
        self.assertEqual(SourceAction.from_setting("", 0, "move_to:failed"),
                         [SourceAction(ActionType.MOVE_TO, "failed")])
        self.assertEqual(SourceAction.from_setting([], 0, "delete"),
                         [SourceAction(ActionType.DELETE)])
        self.assertEqual(SourceAction.from_setting(["bogus"], 0, "mark_seen"),
                         [])
        self.assertEqual(SourceAction.from_setting(None), [])
        print("Passed!")

    @mock.patch("dmarcfetch.mail.imap.IMAPClient")
    def testIMAPExpungeIsDeferred(self, client_class):
        """Test that moved and deleted messages are expunged together"""
        print()
        client = mock_imap_client(client_class)
        mailbox = IMAPMailBox("imap.example.com", "dmarc@example.com", "secret")
        self.assertEqual(mailbox.name(), "dmarc")
        IMAPMessage(mailbox, 1, {}).move("failed")
        IMAPMessage(mailbox, 2, {}).delete()
        client.login.assert_called_once_with("dmarc@example.com", "secret")
        client.move.assert_called_once_with([1], "INBOX/failed")
        client.delete_messages.assert_called_once_with([2])
        self.assertEqual(mailbox.pending_expunge, ((1, "move"), (2, "delete")))
        client.expunge.assert_not_called()

        mailbox.expunge()
        client.expunge.assert_called_once_with()
        self.assertEqual(mailbox.pending_expunge, ())
        mailbox.cleanup()
        client.logout.assert_called_once_with()
        print("Passed!")

    @mock.patch("dmarcfetch.mail.imap.IMAPClient")
    def testIMAPMoveWithoutMoveCapability(self, client_class):
        """Test that messages are copied and deleted without MOVE"""
        print()
        client = mock_imap_client(client_class)
        client.has_capability.return_value = False
        mailbox = IMAPMailBox("imap.example.com:1993", "dmarc", "secret",
                              encryption="starttls")
        IMAPMessage(mailbox, 7, {}).move("done")
        self.assertEqual(client_class.call_args[0][0], "imap.example.com")
        self.assertEqual(client_class.call_args[1]["port"], 1993)
        self.assertFalse(client_class.call_args[1]["ssl"])
        client.starttls.assert_called_once()
        client.copy.assert_called_once_with([7], "INBOX/done")
        client.delete_messages.assert_called_once_with([7])
        client.move.assert_not_called()
        self.assertEqual(mailbox.pending_expunge, ((7, "move"),))
        print("Passed!")

    @mock.patch("dmarcfetch.mail.imap.IMAPClient")
    def testIMAPExpungeWithoutConnection(self, client_class):
        """Test that expunge and cleanup do nothing if never connected"""
        print()
        mailbox = IMAPMailBox("imap.example.com", "dmarc", "secret")
        mailbox.expunge()
        mailbox.cleanup()
        client_class.assert_not_called()
        print("Passed!")

    @mock.patch("dmarcfetch.mail.imap.IMAPClient")
    def testIMAPCheck(self, client_class):
        """Test mailbox checks"""
        print()
        client = mock_imap_client(client_class)
        client.folder_status.return_value = {b"MESSAGES": 3, b"UNSEEN": 1}
        mailbox = IMAPMailBox("imap.example.com", "dmarc", "secret")
        self.assertEqual(mailbox.check(), {
            "error_code": 0,
            "message": "Successfully",
            "status": {"messages": 3, "unseen": 1},
        })

        client = mock_imap_client(client_class, (b"\\Noselect",))
        mailbox = IMAPMailBox("imap.example.com", "dmarc", "secret")
        result = mailbox.check()
        self.assertEqual(result["error_code"], -1)
        self.assertEqual(result["message"], "The resource is not a mailbox")

        client = mock_imap_client(client_class)
        client.list_folders.return_value = []
        mailbox = IMAPMailBox("imap.example.com", "dmarc", "secret")
        result = mailbox.check()
        self.assertEqual(result["message"], "IMAP: Mailbox `INBOX` not found")

        client = mock_imap_client(client_class)
        client.login.side_effect = LoginError("Invalid credentials")
        mailbox = IMAPMailBox("imap.example.com", "dmarc", "secret")
        result = mailbox.check()
        self.assertEqual(result["message"], "IMAP: Authentication failed")
        print("Passed!")

    def testIMAPConfiguration(self):
        """Test invalid mailbox settings"""
        print()
        with self.assertRaises(ConfigurationError):
            IMAPMailBox("imap.example.com", "dmarc", "secret",
                        encryption="tls1.0")
        mailbox = IMAPMailBox("imap.example.com", "dmarc", "secret",
                              auth_method="kerberos")
        with self.assertRaises(ConfigurationError):
            mailbox.client
        print("Passed!")

    @mock.patch("dmarcfetch.mail.imap.IMAPClient")
    def testIMAPMessages(self, client_class):
        """Test listing messages and fetching attachments"""
        print()
        client = mock_imap_client(client_class)
        report = gzip.compress(make_report())
        bodies = {5: make_email(report), 3: make_email()}
        headers = {
            5: {b"ENVELOPE": make_envelope(2), b"INTERNALDATE": None},
            3: {b"ENVELOPE": make_envelope(1, None), b"INTERNALDATE": None},
        }

        def fetch(uids, data):
            if data == ["BODY.PEEK[]"]:
                return {uid: {b"BODY[]": bodies[uid]}
                        for uid in uids if uid in bodies}
            return {uid: headers[uid] for uid in uids}

        client.search.return_value = [5, 3]
        client.fetch.side_effect = fetch
        mailbox = IMAPMailBox("imap.example.com", "dmarc", "secret")

        messages = mailbox.messages(SearchCriteria.UNSEEN, SortOrder.ASCENDING)
        client.search.assert_called_once_with("UNSEEN")
        self.assertEqual([m.uid for m in messages], [3, 5])
        messages = mailbox.messages(SearchCriteria.UNSEEN,
                                    SortOrder.DESCENDING)
        self.assertEqual([m.uid for m in messages], [5, 3])

        message = messages[0]
        self.assertEqual(message.overview()["from"], "Example Reports")
        self.assertEqual(message.attachment_count(), 1)
        attachment = message.attachment()
        self.assertEqual(attachment.filename(), "report.xml.gz")
        self.assertEqual(attachment.stream().read(), report)
        # The body is fetched only once
        self.assertIs(message.attachment(), attachment)
        body_fetches = [c for c in client.fetch.call_args_list
                        if c[0][1] == ["BODY.PEEK[]"]]
        self.assertEqual(len(body_fetches), 1)
        message.close()

        without_name = messages[1]
        self.assertEqual(without_name.overview()["from"],
                         "noreply-dmarc-support@example.net")
        with self.assertRaises(SoftError) as context:
            without_name.attachment()
        self.assertEqual(str(context.exception), "The message has no attachment")

        vanished = IMAPMessage(mailbox, 99, {})
        with self.assertRaises(SoftError) as context:
            vanished.attachment()
        self.assertEqual(str(context.exception), "The message not found")
        print("Passed!")

    @mock.patch("dmarcfetch.mail.imap.IMAPClient")
    def testIMAPCommandFailure(self, client_class):
        """Test that transport errors are wrapped"""
        print()
        client = mock_imap_client(client_class)
        client.add_flags.side_effect = IMAPClientError("server error")
        mailbox = IMAPMailBox("imap.example.com", "dmarc", "secret")
        with self.assertRaises(MailboxError) as context:
            IMAPMessage(mailbox, 1, {}).mark_seen()
        self.assertIsInstance(context.exception.__cause__, IMAPClientError)

        client.create_folder.side_effect = IMAPClientError("server error")
        client.folder_exists.return_value = False
        with self.assertRaises(MailboxError):
            mailbox.ensure_mailbox("failed")
        print("Passed!")

    @mock.patch("dmarcfetch.mail.imap.IMAPClient")
    def testIMAPChildMailbox(self, client_class):
        """Test child mailboxes and folder creation"""
        print()
        client = mock_imap_client(client_class)
        client.folder_exists.side_effect = [False, True]
        mailbox = IMAPMailBox("imap.example.com", "dmarc", "secret")
        mailbox.ensure_mailbox("failed")
        mailbox.ensure_mailbox("failed")
        client.create_folder.assert_called_once_with("INBOX/failed")
        client.subscribe_folder.assert_called_once_with("INBOX/failed")

        IMAPMessage(mailbox, 1, {}).delete()
        child = mailbox.child_mailbox("failed")
        self.assertEqual(child.folder(), "INBOX/failed")
        self.assertEqual(child.name(), "dmarc")
        self.assertEqual(child.pending_expunge, ())
        self.assertFalse(child.connected)
        print("Passed!")

    def testMailboxSource(self):
        """Test post processing of mailbox messages"""
        print()
        report = gzip.compress(make_report())
        good = mock.MagicMock()
        good.attachment.return_value = MailAttachment(
            attachment_part(make_email(report)))
        bad = mock.MagicMock()
        bad.attachment.return_value = MailAttachment(
            attachment_part(make_email(b"\x89PNG", "image.png", "image/png")))
        bad.overview.return_value = {"from": "Example Reports",
                                     "date": "2020-01-01 12:00:00"}
        mailbox = mock.MagicMock()
        mailbox.messages.return_value = [good, bad]

        with tempfile.TemporaryDirectory() as tmp_dir:
            storage = JSONReportStorage(tmp_dir)
            results = ReportFetcher(MailboxSource(mailbox), storage).fetch()

        mailbox.messages.assert_called_once_with(SearchCriteria.UNSEEN,
                                                 SortOrder.ASCENDING)
        self.assertEqual(results[0]["error_code"], 0)
        self.assertEqual(results[0]["domain"], "example.com")
        good.mark_seen.assert_called_once_with()
        good.move.assert_not_called()
        self.assertEqual(results[1]["message"],
                         "Attachment file type is not valid (image/png)")
        self.assertEqual(results[1]["emailed_from"], "Example Reports")
        self.assertEqual(results[1]["emailed_date"], "2020-01-01 12:00:00")
        mailbox.ensure_mailbox.assert_called_once_with("failed")
        bad.move.assert_called_once_with("failed")
        bad.mark_seen.assert_not_called()
        mailbox.expunge.assert_called_once_with()
        mailbox.cleanup.assert_called_once_with()
        print("Passed!")

    def testMailboxSourceError(self):
        """Test that a failing mailbox gives a source error"""
        print()
        mailbox = mock.MagicMock()
        mailbox.messages.side_effect = MailboxError("IMAP: Connection failed")
        with tempfile.TemporaryDirectory() as tmp_dir:
            storage = JSONReportStorage(tmp_dir)
            results = ReportFetcher(MailboxSource(mailbox), storage).fetch()
        self.assertEqual(results, [{"source_error": "IMAP: Connection failed"}])
        mailbox.cleanup.assert_called_once_with()
        self.assertEqual(make_summary_result(results), {
            "error_code": -1, "message": "IMAP: Connection failed"})
        print("Passed!")

    def testDirectorySource(self):
        """Test fetching reports from a directory"""
        print()
        with tempfile.TemporaryDirectory() as tmp_dir:
            location = os.path.join(tmp_dir, "reports")
            os.mkdir(location)
            with open(os.path.join(location, "a.xml.gz"), "wb") as f:
                f.write(gzip.compress(make_report("a")))
            with open(os.path.join(location, "b.xml"), "wb") as f:
                f.write(b"not a report")
            with open(os.path.join(location, "c.xml"), "wb") as f:
                f.write(make_report("a"))
            storage = JSONReportStorage(os.path.join(tmp_dir, "output"))

            source = DirectorySource(location)
            results = ReportFetcher(source, storage).fetch()
            self.assertEqual([r["error_code"] for r in results], [0, -1, -1])
            self.assertEqual(results[0]["report_id"], "a")
            self.assertEqual(results[1]["message"],
                             "The report is not a valid XML document")
            self.assertEqual(results[2]["message"],
                             "The report a has already been loaded")
            self.assertEqual(sorted(os.listdir(location)), ["failed"])
            self.assertEqual(
                sorted(os.listdir(os.path.join(location, "failed"))),
                ["b.xml", "c.xml"])

            summary = make_summary_result(results)
            self.assertEqual(summary["error_code"], -1)
            self.assertEqual(summary["message"],
                             "Only 1 of the 3 report files have been loaded")

            with open(storage.log_json_path) as f:
                log = json.load(f)
            self.assertEqual([item["success"] for item in log],
                             [True, False, False])
            self.assertEqual(log[0]["source"], "directory")
            self.assertEqual(log[0]["domain"], "example.com")
            self.assertEqual(log[0]["external_id"], "a")
            with open(storage.aggregate_json_path) as f:
                self.assertEqual(len(json.load(f)), 1)
        print("Passed!")

    def testDirectorySourceLimitAndActions(self):
        """Test the file limit and the configured actions"""
        print()
        with tempfile.TemporaryDirectory() as tmp_dir:
            for name in ("1.xml", "2.xml", "3.xml"):
                with open(os.path.join(tmp_dir, name), "wb") as f:
                    f.write(make_report(name))
            storage = JSONReportStorage(os.path.join(tmp_dir, "output"))
            source = DirectorySource(tmp_dir, ["move_to:done", "move_to:a/b"])
            results = ReportFetcher(source, storage, limit=2).fetch()
            self.assertEqual(len(results), 2)
            self.assertEqual(sorted(os.listdir(os.path.join(tmp_dir, "done"))),
                             ["1.xml", "2.xml"])
            self.assertTrue(os.path.exists(os.path.join(tmp_dir, "3.xml")))
            summary = make_summary_result(results)
            self.assertEqual(summary["message"],
                             "2 report files have been loaded successfully")
            self.assertEqual(len(summary["results"]), 2)
        print("Passed!")

    def testMissingDirectory(self):
        """Test a directory that does not exist"""
        print()
        storage = JSONReportStorage(tempfile.gettempdir())
        results = ReportFetcher(DirectorySource("/nonexistent/dmarc"),
                                storage).fetch()
        self.assertEqual(results, [{
            "source_error": "The /nonexistent/dmarc directory does not exist!"
        }])
        print("Passed!")

    def testUploadedFilesSource(self):
        """Test uploaded files, which are left in place"""
        print()
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "php1234")
            with open(path, "wb") as f:
                f.write(make_zip([("report.xml", make_report())]))
            storage = JSONReportStorage(os.path.join(tmp_dir, "output"))
            source = UploadedFilesSource([(path, "report.zip")])
            results = ReportFetcher(source, storage).fetch()
            self.assertEqual(results[0]["filename"], "report.zip")
            self.assertEqual(make_summary_result(results)["message"],
                             "Successfully loaded")
            self.assertTrue(os.path.exists(path))
        print("Passed!")

    def testS3Source(self):
        """Test fetching reports from a bucket"""
        print()
        client = mock.MagicMock()
        client.get_paginator.return_value.paginate.return_value = [
            {"Contents": [{"Key": "incoming/bad.xml"},
                          {"Key": "incoming/good.xml"},
                          {"Key": "incoming/"}]},
        ]
        objects = {
            "incoming/good.xml": make_report(),
            "incoming/bad.xml": b"<?xml version=\"1.0\" ?><other/>",
        }
        client.get_object.side_effect = lambda Bucket, Key: {
            "Body": NonSeekableStream(objects[Key])}
        source = S3Source("dmarc", "incoming", client=client)
        with tempfile.TemporaryDirectory() as tmp_dir:
            storage = JSONReportStorage(tmp_dir)
            results = ReportFetcher(source, storage).fetch()
        client.get_paginator.return_value.paginate.assert_called_once_with(
            Bucket="dmarc", Prefix="incoming/", Delimiter="/")
        self.assertEqual(len(results), 2)
        self.assertEqual(results[0]["message"],
                         "The report is not a DMARC aggregate report")
        client.copy_object.assert_called_once_with(
            Bucket="dmarc", Key="incoming/failed/bad.xml",
            CopySource={"Bucket": "dmarc", "Key": "incoming/bad.xml"})
        client.delete_object.assert_any_call(Bucket="dmarc",
                                             Key="incoming/bad.xml")
        client.delete_object.assert_any_call(Bucket="dmarc",
                                             Key="incoming/good.xml")
        self.assertEqual(results[1]["error_code"], 0)
        print("Passed!")

    def testPostProcessingFailure(self):
        """Test a report that is saved but cannot be deleted"""
        print()
        client = mock.MagicMock()
        client.get_paginator.return_value.paginate.return_value = [
            {"Contents": [{"Key": "report.xml"}]}]
        client.get_object.return_value = {"Body": io.BytesIO(make_report())}
        client.delete_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}},
            "DeleteObject")
        source = S3Source("dmarc", client=client)
        with tempfile.TemporaryDirectory() as tmp_dir:
            storage = JSONReportStorage(tmp_dir)
            results = ReportFetcher(source, storage).fetch()
            with open(storage.log_json_path) as f:
                log = json.load(f)
        self.assertEqual(results[0]["error_code"], 0)
        self.assertEqual(results[0]["post_processing_message"],
                         "Error deleting file from remote filesystem: "
                         "report.xml")
        self.assertFalse(log[0]["success"])
        summary = make_summary_result(results)
        self.assertEqual(summary["error_code"], 0)
        self.assertEqual(summary["message"],
                         "1 report files have been loaded successfully")
        self.assertEqual(summary["other_errors"],
                         [results[0]["post_processing_message"]])
        print("Passed!")

    def testSummaryResult(self):
        """Test combining results"""
        print()
        self.assertEqual(make_summary_result([]), {
            "error_code": 0, "message": "There are no report files to load"})
        single = {"error_code": -1, "message": "Incorrect report data"}
        self.assertIs(make_summary_result([single]), single)
        summary = make_summary_result([single, dict(single)])
        self.assertEqual(summary["message"],
                         "None of the 2 report files has been loaded")
        summary = make_summary_result([{"source_error": "a"},
                                       {"source_error": "b"}])
        self.assertEqual(summary["error_code"], -1)
        self.assertIsNone(summary["message"])
        self.assertEqual(summary["other_errors"], ["a", "b"])
        self.assertNotIn("results", summary)
        print("Passed!")

    def testParseReportMetadata(self):
        """Test report validation"""
        print()
        report = parse_report_metadata(make_report("r1", "example.org"))
        self.assertEqual(report["report_id"], "r1")
        self.assertEqual(report["domain"], "example.org")
        self.assertEqual(report["org_name"], "example.net")
        self.assertEqual(report["begin_date"], "2020-01-01 00:00:00")
        self.assertEqual(report["end_date"], "2020-01-01 23:59:59")
        bad_reports = [
            b"<feedback><report_metadata/></feedback>",
            b"<feedback>",
            b"<?xml version=\"1.0\" ?><html/>",
            make_report().replace(b"1577836800", b"yesterday"),
        ]
        for data in bad_reports:
            with self.assertRaises(InvalidReport):
                parse_report_metadata(data)
        # Elements that are text or that have attributes or children
        incorrect_reports = [
            b"<feedback><report_metadata>x</report_metadata>"
            b"<policy_published><domain>example.com</domain>"
            b"</policy_published></feedback>",
            make_report().replace(b"<report_id>", b'<report_id type="x">'),
            make_report().replace(
                b"<domain>example.com</domain>\n    <adkim>",
                b"<domain><name>example.com</name></domain>\n    <adkim>"),
            make_report().replace(
                b"<org_name>example.net</org_name>",
                b"<org_name><name>example.net</name></org_name>"),
        ]
        for data in incorrect_reports:
            with self.assertRaises(InvalidReport) as context:
                parse_report_metadata(data)
            self.assertEqual(str(context.exception), "Incorrect report data")
        print("Passed!")

    def testMalformedReportsDoNotStopFetching(self):
        """Test that malformed reports are rejected one by one"""
        print()
        with tempfile.TemporaryDirectory() as tmp_dir:
            location = os.path.join(tmp_dir, "reports")
            os.mkdir(location)
            with open(os.path.join(location, "a.xml"), "wb") as f:
                f.write(b"<feedback><report_metadata>x</report_metadata>"
                        b"</feedback>")
            with open(os.path.join(location, "b.xml"), "wb") as f:
                f.write(make_report().replace(b"<report_id>",
                                              b'<report_id type="x">'))
            with open(os.path.join(location, "zz_good.xml"), "wb") as f:
                f.write(make_report())
            storage = JSONReportStorage(os.path.join(tmp_dir, "output"))
            results = ReportFetcher(DirectorySource(location), storage).fetch()
            self.assertEqual([r["error_code"] for r in results], [-1, -1, 0])
            self.assertEqual(results[0]["message"], "Incorrect report data")
            self.assertEqual(results[1]["message"], "Incorrect report data")
            self.assertEqual(
                sorted(os.listdir(os.path.join(location, "failed"))),
                ["a.xml", "b.xml"])
        print("Passed!")

    def testCorruptedReportFiles(self):
        """Test that report files that cannot be decompressed are rejected"""
        print()
        data = make_report() * 10
        gz_data = bytearray(gzip.compress(data))
        # Final block of the reserved type 3 right after the 10-byte header
        gz_data[10] = 0x07
        zip_data = bytearray(make_zip([("report.xml", data)],
                                      zipfile.ZIP_STORED))
        # Local file header (30 bytes) and the entry name come first
        zip_data[30 + len("report.xml") + 100] ^= 0xFF
        with tempfile.TemporaryDirectory() as tmp_dir:
            location = os.path.join(tmp_dir, "reports")
            os.mkdir(location)
            files = {"a.xml.gz": gz_data, "b.zip": zip_data,
                     "zz_good.xml": make_report()}
            for name, content in files.items():
                with open(os.path.join(location, name), "wb") as f:
                    f.write(bytes(content))

            for name in ("a.xml.gz", "b.zip"):
                print("Testing {0}: ".format(name), end="")
                path = os.path.join(location, name)
                with ReportFile.from_file(path) as report_file:
                    with self.assertRaises(ReportFileError) as context:
                        report_file.read()
                self.assertEqual(str(context.exception),
                                 "Failed to read the report file")
                self.assertIsNotNone(context.exception.__cause__)
                print("Passed!")

            print("Testing the fetcher: ", end="")
            storage = JSONReportStorage(os.path.join(tmp_dir, "output"))
            results = ReportFetcher(DirectorySource(location), storage).fetch()
            self.assertEqual([r["error_code"] for r in results], [-1, -1, 0])
            self.assertEqual(
                sorted(os.listdir(os.path.join(location, "failed"))),
                ["a.xml.gz", "b.zip"])
            with open(storage.log_json_path) as f:
                log = json.load(f)
            self.assertEqual([item["success"] for item in log],
                             [False, False, True])
            print("Passed!")

    def testS3ReadFailure(self):
        """Test that errors while reading an S3 object are wrapped"""
        print()
        client = mock.MagicMock()
        client.get_paginator.return_value.paginate.return_value = [
            {"Contents": [{"Key": "a.xml.gz"}, {"Key": "b.zip"}]}]
        gz_body = mock.MagicMock()
        gz_body.read.side_effect = BotoCoreError()
        zip_body = mock.MagicMock()
        zip_body.read.side_effect = [b"PK\x03\x04" + b"\x00" * 10,
                                     BotoCoreError()]
        bodies = {"a.xml.gz": gz_body, "b.zip": zip_body}
        client.get_object.side_effect = lambda Bucket, Key: {
            "Body": bodies[Key]}
        source = S3Source("dmarc", client=client)
        with tempfile.TemporaryDirectory() as tmp_dir:
            storage = JSONReportStorage(tmp_dir)
            results = ReportFetcher(source, storage).fetch()
        self.assertEqual(len(results), 2)
        self.assertEqual(results[0]["message"],
                         "Error reading file from remote filesystem: a.xml.gz")
        self.assertEqual(results[1]["message"],
                         "Error reading file from remote filesystem: b.zip")
        client.copy_object.assert_any_call(
            Bucket="dmarc", Key="failed/b.zip",
            CopySource={"Bucket": "dmarc", "Key": "b.zip"})
        gz_body.close.assert_called_once_with()
        zip_body.close.assert_called_once_with()
        print("Passed!")

    def testExceptionResult(self):
        """Test conversion of errors to results"""
        print()
        result = exception_result(ReportFileError("Failed"), debug=True)
        self.assertEqual(result, {"error_code": -1, "message": "Failed"})
        error = MailboxError("IMAP: Cannot mark a message")
        error.__cause__ = IMAPClientError("server error")
        result = exception_result(error, debug=True)
        self.assertEqual(result["message"], "IMAP: Cannot mark a message")
        self.assertIn("IMAPClientError", result["debug_info"]["content"])
        self.assertNotIn("debug_info", exception_result(error))
        print("Passed!")

    def testAppendJSON(self):
        """Test appending to a JSON array file"""
        print()
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "items.json")
            dmarcfetch.utils.append_json(path, [{"a": 1}])
            dmarcfetch.utils.append_json(path, [])
            dmarcfetch.utils.append_json(path, [{"b": 2}, {"c": "é"}])
            with open(path, encoding="utf-8") as f:
                self.assertEqual(json.load(f), [{"a": 1}, {"b": 2}, {"c": "é"}])

            print("Testing a trailing newline: ", end="")
            with open(path, "w") as f:
                f.write('[{"a": 1}]\n')
            dmarcfetch.utils.append_json(path, [{"b": 2}])
            with open(path) as f:
                self.assertEqual(json.load(f), [{"a": 1}, {"b": 2}])
            print("Passed!")

            print("Testing an empty array: ", end="")
            with open(path, "w") as f:
                f.write("[ ]\n")
            dmarcfetch.utils.append_json(path, [{"b": 2}])
            with open(path) as f:
                self.assertEqual(json.load(f), [{"b": 2}])
            print("Passed!")

            print("Testing a file that is not an array: ", end="")
            with open(path, "w") as f:
                f.write('{"a": 1}')
            with self.assertRaises(ValueError):
                dmarcfetch.utils.append_json(path, [{"b": 2}])
            with open(path) as f:
                self.assertEqual(f.read(), '{"a": 1}')
            print("Passed!")

    def testSaveReportToCorruptedFile(self):
        """Test that a corrupted aggregate file is not overwritten"""
        print()
        with tempfile.TemporaryDirectory() as tmp_dir:
            location = os.path.join(tmp_dir, "reports")
            os.mkdir(location)
            with open(os.path.join(location, "report.xml"), "wb") as f:
                f.write(make_report())
            output = os.path.join(tmp_dir, "output")
            os.mkdir(output)
            storage = JSONReportStorage(output)
            with open(storage.aggregate_json_path, "w") as f:
                f.write('{"a": 1}')
            results = ReportFetcher(DirectorySource(location), storage).fetch()
            self.assertEqual(len(results), 1)
            self.assertEqual(results[0]["error_code"], -1)
            self.assertTrue(
                results[0]["message"].startswith("Failed to save the report")
            )
            with open(storage.aggregate_json_path) as f:
                self.assertEqual(f.read(), '{"a": 1}')
            self.assertEqual(os.listdir(os.path.join(location, "failed")),
                             ["report.xml"])
        print("Passed!")

    def testConfig(self):
        """Test loading a configuration file"""
        print()
        config = """[general]
output = /tmp/dmarc
debug = True

[mailbox:reports]
host = imap.example.com:993
username = dmarc@example.com
password = secret
mailbox = DMARC
novalidate_cert = true

[directory]
location = /var/spool/dmarc

[s3]
bucket = dmarc
prefix = /incoming

[fetcher]
mailboxes_messages_maximum = 5
directories_when_done = move_to:done, delete
"""
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "dmarcfetch.ini")
            with open(path, "w") as f:
                f.write(config)
            opts = load_config(path)
        self.assertTrue(opts.debug)
        self.assertEqual(opts.output, "/tmp/dmarc")
        self.assertEqual(opts.mailboxes[0]["host"], "imap.example.com:993")
        self.assertTrue(opts.mailboxes[0]["novalidate_cert"])
        self.assertEqual(opts.remote_filesystems[0]["prefix"], "incoming")
        self.assertEqual(opts.fetcher["mailboxes_messages_maximum"], 5)
        self.assertEqual(opts.fetcher["directories_files_maximum"], 50)

        mailbox = opts.imap_mailboxes()[0]
        self.assertEqual(mailbox.name(), "reports")
        self.assertEqual(mailbox.folder(), "DMARC")
        source = opts.directory_sources()[0]
        self.assertEqual(source.location, "/var/spool/dmarc")
        self.assertEqual(source.when_done, [
            SourceAction(ActionType.MOVE_TO, "done"),
            SourceAction(ActionType.DELETE),
        ])
        self.assertEqual(source.when_failed,
                         [SourceAction(ActionType.MOVE_TO, "failed")])
        source = opts.mailbox_sources()[0]
        self.assertEqual(source.when_done,
                         [SourceAction(ActionType.MARK_SEEN)])
        print("Passed!")

    def testConfigMissingSetting(self):
        """Test that required settings are checked"""
        print()
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "dmarcfetch.ini")
            with open(path, "w") as f:
                f.write("[mailbox]\nhost = imap.example.com\nusername = a\n")
            with self.assertRaises(ConfigurationError) as context:
                load_config(path)
            self.assertIn("password", str(context.exception))
            with self.assertRaises(ConfigurationError):
                load_config(os.path.join(tmp_dir, "missing.ini"))
        print("Passed!")

    def testVersion(self):
        """Test that the package has a version"""
        print()
        self.assertTrue(dmarcfetch.__version__)
        print("Passed!")


if __name__ == "__main__":
    unittest.main(verbosity=2)
