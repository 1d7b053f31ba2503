"""Sets global version values"""

__version__ = "1.0.0"

MAGIC_ZIP = b"\x50\x4b\x03\x04"
MAGIC_GZIP = b"\x1f\x8b"
MAGIC_XML = b"\x3c\x3f\x78\x6d\x6c\x20"

MIME_TYPE_XML = "text/xml"
MIME_TYPE_GZIP = "application/gzip"
MIME_TYPE_ZIP = "application/zip"
MIME_TYPE_UNKNOWN = "application/octet-stream"
