# -*- coding: utf-8 -*-

"""Opens report files in any of the supported container formats"""

from __future__ import annotations

import gzip
import io
import os
import posixpath
import shutil
import tempfile
import zipfile
import zlib
from typing import BinaryIO, Optional

from dmarcfetch.constants import (
    MAGIC_GZIP,
    MAGIC_XML,
    MAGIC_ZIP,
    MIME_TYPE_GZIP,
    MIME_TYPE_UNKNOWN,
    MIME_TYPE_XML,
    MIME_TYPE_ZIP,
)
from dmarcfetch.errors import ReportFileError
from dmarcfetch.log import logger

# https://tools.ietf.org/html/rfc1952
GZIP_HEADER_LENGTH = 10
GZIP_TRAILER_LENGTH = 8
FLAG_FHCRC = 2
FLAG_FEXTRA = 4
FLAG_FNAME = 8
FLAG_FCOMMENT = 16

CHUNK_SIZE = 8192

# Raised while a corrupted report file is decompressed
READ_ERRORS = (OSError, EOFError, zlib.error, zipfile.BadZipFile)

EXTENSION_MIME_TYPES = {
    "xml": MIME_TYPE_XML,
    "gz": MIME_TYPE_GZIP,
    "zip": MIME_TYPE_ZIP,
}


class GzipCutFilter(object):
    """
    Removes the header and the trailer of a gzip member from a byte stream,
    leaving only the deflate data

    The data is passed in chunks with :meth:`feed`. The output depends only
    on the data fed so far, not on how it was split into chunks.
    """

    def __init__(self):
        self.header_consumed = False
        self._header_data = b""
        self._tail_data = b""

    def feed(self, data: bytes) -> bytes:
        """
        Filters the next chunk of the gzip stream

        Args:
            data (bytes): The next chunk of the gzip stream

        Returns:
            bytes: Deflate data that is ready to be passed on, possibly empty
        """
        if not self.header_consumed:
            data = self._skip_header(data)
        return self._cut_tail(data)

    def _skip_header(self, data: bytes) -> bytes:
        self._header_data += data
        header = self._header_data
        length = len(header)
        if length < GZIP_HEADER_LENGTH:
            return b""

        pos = GZIP_HEADER_LENGTH
        flags = header[3]
        if flags & FLAG_FEXTRA:
            if pos + 2 > length:
                return b""
            pos += 2 + (header[pos] | (header[pos + 1] << 8))
            if pos > length:
                return b""
        if flags & FLAG_FNAME:
            pos = _skip_zero_terminated(header, pos)
            if pos < 0:
                return b""
        if flags & FLAG_FCOMMENT:
            pos = _skip_zero_terminated(header, pos)
            if pos < 0:
                return b""
        if flags & FLAG_FHCRC:
            pos += 2
            if pos > length:
                return b""

        self.header_consumed = True
        self._header_data = b""
        return header[pos:]

    def _cut_tail(self, data: bytes) -> bytes:
        combined = self._tail_data + data
        self._tail_data = combined[-GZIP_TRAILER_LENGTH:]
        if len(combined) <= GZIP_TRAILER_LENGTH:
            return b""
        return combined[:-GZIP_TRAILER_LENGTH]


def _skip_zero_terminated(data: bytes, pos: int) -> int:
    end = data.find(b"\x00", pos)
    if end == -1:
        return -1
    return end + 1


class _ChunkReader(io.RawIOBase):
    """Base class for read-only streams that transform another stream"""

    def __init__(self, source: BinaryIO, chunk_size: int = CHUNK_SIZE):
        super().__init__()
        self._source = source
        self._chunk_size = chunk_size
        self._buffer = b""
        self._eof = False

    def readable(self):
        return True

    def readinto(self, b):
        while not self._buffer and not self._eof:
            chunk = self._source.read(self._chunk_size)
            if chunk:
                self._buffer = self._transform(chunk)
            else:
                self._buffer = self._finish()
                self._eof = True
        size = min(len(b), len(self._buffer))
        b[:size] = self._buffer[:size]
        self._buffer = self._buffer[size:]
        return size

    def close(self):
        if not self.closed:
            self._source.close()
        super().close()

    def _transform(self, chunk: bytes) -> bytes:
        raise NotImplementedError

    def _finish(self) -> bytes:
        return b""


class GzipCutReader(_ChunkReader):
    """Reads the deflate data of a gzip stream without seeking"""

    def __init__(self, source: BinaryIO, chunk_size: int = CHUNK_SIZE):
        super().__init__(source, chunk_size)
        self._filter = GzipCutFilter()

    def _transform(self, chunk):
        return self._filter.feed(chunk)


class InflateReader(_ChunkReader):
    """Decompresses a raw deflate stream"""

    def __init__(self, source: BinaryIO, chunk_size: int = CHUNK_SIZE):
        super().__init__(source, chunk_size)
        self._decompressor = zlib.decompressobj(-zlib.MAX_WBITS)

    def _transform(self, chunk):
        try:
            return self._decompressor.decompress(chunk)
        except zlib.error as e:
            raise ReportFileError("Failed to decompress the report file") from e

    def _finish(self):
        try:
            return self._decompressor.flush()
        except zlib.error as e:
            raise ReportFileError("Failed to decompress the report file") from e


def open_gzip_stream(source: BinaryIO) -> io.BufferedReader:
    """
    Decompresses a gzip stream that does not have to be seekable

    Args:
        source: A binary stream of gzip data

    Returns:
        A buffered binary stream of the decompressed data
    """
    return io.BufferedReader(InflateReader(GzipCutReader(source)))


def _peek(stream, size: int) -> Optional[bytes]:
    peek = getattr(stream, "peek", None)
    if callable(peek):
        return peek(size)[:size]
    seekable = getattr(stream, "seekable", None)
    if callable(seekable) and seekable():
        pos = stream.tell()
        data = stream.read(size)
        stream.seek(pos)
        return data
    return None


def sniff_mime_type(header: bytes) -> Optional[str]:
    """Returns the MIME type of a report file by its first bytes, if known"""
    if header.startswith(MAGIC_ZIP):
        return MIME_TYPE_ZIP
    if header.startswith(MAGIC_GZIP):
        return MIME_TYPE_GZIP
    if header.startswith(MAGIC_XML):
        return MIME_TYPE_XML
    return None


def get_mime_type(filename: Optional[str], stream=None) -> str:
    """
    Detects the MIME type of a report file

    The content is checked first if a stream is given and it can be read
    without being consumed. Otherwise, or if the content is not recognized,
    the file extension is used.

    Args:
        filename (str): The file name
        stream: An optional binary stream of the file content

    Returns:
        str: The MIME type, ``application/octet-stream`` if it is unknown
    """
    if stream is not None:
        header = _peek(stream, len(MAGIC_XML))
        if header:
            mime_type = sniff_mime_type(header)
            if mime_type is not None:
                return mime_type
    if filename:
        extension = os.path.splitext(filename)[1].lstrip(".").lower()
        if extension in EXTENSION_MIME_TYPES:
            return EXTENSION_MIME_TYPES[extension]
    return MIME_TYPE_UNKNOWN


class ReportFile(object):
    """
    A report file in one of the supported container formats

    Use :meth:`from_file` or :meth:`from_stream` to create an instance and
    :meth:`stream` to read the decompressed report. The instance owns the
    streams it opens and any temporary file it creates; they are released
    by :meth:`close`.
    """

    def __init__(
        self,
        filename: str,
        mime_type: str,
        *,
        filepath: Optional[str] = None,
        source: Optional[BinaryIO] = None,
        remove: bool = False,
    ):
        self._filename = filename
        self._mime_type = mime_type
        self._filepath = filepath
        self._source = source
        self._remove = remove
        self._stream: Optional[BinaryIO] = None
        self._zip: Optional[zipfile.ZipFile] = None

    @classmethod
    def from_file(
        cls, filepath: str, filename: Optional[str] = None, remove: bool = False
    ) -> "ReportFile":
        """
        Creates a report file from a file on disk

        Args:
            filepath (str): Path to the file
            filename (str): The original file name, if it differs
            remove (bool): Delete the file when the report file is closed
        """
        if not os.path.isfile(filepath):
            raise ReportFileError("ReportFile: it is not a file")
        fname = os.path.basename(filename if filename else filepath)
        try:
            with open(filepath, "rb") as file_object:
                mime_type = get_mime_type(fname, file_object)
        except OSError as e:
            raise ReportFileError("Failed to open a report file") from e
        return cls(fname, mime_type, filepath=filepath, remove=remove)

    @classmethod
    def from_stream(
        cls, stream: BinaryIO, filename: str, mime_type: Optional[str] = None
    ) -> "ReportFile":
        """
        Creates a report file from a binary stream, which is then owned by
        the report file

        Args:
            stream: A binary stream, it does not have to be seekable
            filename (str): The file name
            mime_type (str): The MIME type, if it is already known
        """
        if mime_type is None or mime_type == MIME_TYPE_UNKNOWN:
            try:
                mime_type = get_mime_type(filename, stream)
            except ReportFileError:
                stream.close()
                raise
        if mime_type != MIME_TYPE_ZIP:
            return cls(filename, mime_type, source=stream)

        # Reading a zip archive requires random access
        try:
            fd, tmp_path = tempfile.mkstemp(prefix="dmarc_")
        except OSError as e:
            stream.close()
            raise ReportFileError("Failed to create a temporary file") from e
        try:
            with os.fdopen(fd, "wb") as tmp_file:
                shutil.copyfileobj(stream, tmp_file)
        except ReportFileError:
            os.remove(tmp_path)
            raise
        except OSError as e:
            os.remove(tmp_path)
            raise ReportFileError("Failed to copy data to a temporary file") from e
        finally:
            stream.close()
        return cls(filename, mime_type, filepath=tmp_path, remove=True)

    @property
    def filename(self) -> str:
        return self._filename

    @property
    def mime_type(self) -> str:
        return self._mime_type

    def stream(self) -> BinaryIO:
        """
        Returns:
            A binary stream of the decompressed report
        """
        if self._stream is None:
            if self._mime_type == MIME_TYPE_ZIP:
                self._stream = self._open_zip_entry()
            elif self._source is not None:
                if self._mime_type == MIME_TYPE_GZIP:
                    self._stream = open_gzip_stream(self._source)
                else:
                    self._stream = self._source
            else:
                self._stream = self._open_file()
        return self._stream

    def read(self) -> bytes:
        """Returns the whole decompressed report"""
        try:
            return self.stream().read()
        except READ_ERRORS as e:
            raise ReportFileError("Failed to read the report file") from e

    def close(self):
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        if self._source is not None:
            self._source.close()
            self._source = None
        if self._zip is not None:
            self._zip.close()
            self._zip = None
        if self._remove and self._filepath:
            try:
                os.remove(self._filepath)
            except OSError as e:
                logger.warning(
                    "Failed to remove {0}: {1}".format(self._filepath, e.__str__())
                )
            self._remove = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def _open_zip_entry(self) -> BinaryIO:
        try:
            self._zip = zipfile.ZipFile(self._filepath)
        except (OSError, zipfile.BadZipFile) as e:
            raise ReportFileError("Failed to open a report file") from e
        entries = self._zip.infolist()
        if len(entries) != 1:
            raise ReportFileError("The archive must have only one file in it")
        entry = entries[0]
        if entry.is_dir() or posixpath.basename(entry.filename) != entry.filename:
            raise ReportFileError("There must not be any directories in the archive")
        try:
            return self._zip.open(entry)
        except (OSError, zipfile.BadZipFile, RuntimeError) as e:
            raise ReportFileError("Failed to open a report file") from e

    def _open_file(self) -> BinaryIO:
        # A file that turns out not to be gzip-compressed is read as is
        try:
            with open(self._filepath, "rb") as file_object:
                magic = file_object.read(len(MAGIC_GZIP))
            if magic == MAGIC_GZIP:
                return gzip.open(self._filepath, "rb")
            if self._mime_type == MIME_TYPE_GZIP:
                logger.warning(
                    "{0} is not gzip-compressed, reading it as is".format(
                        self._filename
                    )
                )
            return open(self._filepath, "rb")
        except OSError as e:
            raise ReportFileError("Failed to open a report file") from e
