"""Utility functions that might be useful for other projects"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, List, Sequence

# Trailing bytes of a JSON file read to find the end of its array
JSON_TAIL_SIZE = 4096


def timestamp_to_datetime(timestamp) -> datetime:
    """
    Converts a UNIX/DMARC timestamp to a Python ``datetime`` object in UTC

    Args:
        timestamp (int): The timestamp

    Returns:
        datetime: The converted timestamp as a Python ``datetime`` object
    """
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


def timestamp_to_human(timestamp) -> str:
    """
    Converts a UNIX/DMARC timestamp to a human-readable string

    Args:
        timestamp: The timestamp

    Returns:
        str: The converted timestamp in ``YYYY-MM-DD HH:MM:SS`` format
    """
    return timestamp_to_datetime(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def str_to_list(s: str) -> List[str]:
    """Converts a comma separated string to a list"""
    _list = s.split(",")
    return [i.strip() for i in _list if i.strip()]


def append_json(filename: str, items: Sequence[Any]) -> None:
    """
    Appends items to a JSON array stored in a file, creating the file if
    it does not exist

    Raises:
        ValueError: The file exists but does not end with a JSON array
    """
    if len(items) == 0:
        return
    output_json = json.dumps(items, ensure_ascii=False, indent=2, default=str)
    data = output_json.encode("utf-8")
    if os.path.exists(filename) and os.path.getsize(filename) > 0:
        with open(filename, "rb+") as output:
            size = output.seek(0, os.SEEK_END)
            tail_start = max(0, size - JSON_TAIL_SIZE)
            output.seek(tail_start)
            tail = output.read().rstrip()
            if not tail.endswith(b"]"):
                raise ValueError("{0} does not end with a JSON array".format(filename))
            content = tail[:-1].rstrip()
            if tail_start == 0 and content.lstrip() == b"[":
                # an empty array
                output.seek(0)
                output.write(data)
                output.truncate()
                return
            # replace the closing "]" of the file and the leading "[" of
            # the new items with ","
            output.seek(tail_start + len(content))
            output.write(b",\n" + data[2:])
            output.truncate()
            return
    with open(filename, "wb") as output:
        output.write(data)
