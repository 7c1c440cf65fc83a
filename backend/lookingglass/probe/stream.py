"""
Server-sent-events framing for the live probe stream.

Every message is a JSON object written as ``data: <json>\\n\\n``:

    {"type": "system_info", "hostname": ..., "ips": [...]}   (live MTR only)
    {"output": "<raw probe lines>"}
    {"error": "<message>"}
"""

import json
import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

PREFIX = "data: "


def encode_message(message: Dict[str, Any]) -> str:
    return f"{PREFIX}{json.dumps(message)}\n\n"


def system_info_message(hostname: str, ips: List[str]) -> Dict[str, Any]:
    return {"type": "system_info", "hostname": hostname, "ips": ips}


def decode_messages(text: str) -> List[Dict[str, Any]]:
    """
    Decode every complete message in ``text``.

    Fragments that are not valid JSON objects are logged and skipped.
    """
    messages = []
    for fragment in text.split(PREFIX):
        fragment = fragment.strip()
        if not fragment:
            continue
        try:
            message = json.loads(fragment)
        except json.JSONDecodeError:
            logger.debug(f"Skipping undecodable stream fragment: {fragment[:80]!r}")
            continue
        if isinstance(message, dict):
            messages.append(message)
    return messages


class StreamDecoder:
    """Incremental decoder for reads that may split a message in two."""

    def __init__(self):
        self._buffer = ""

    def feed(self, text: str) -> List[Dict[str, Any]]:
        self._buffer += text
        if "\n\n" not in self._buffer:
            return []
        complete, _, self._buffer = self._buffer.rpartition("\n\n")
        return decode_messages(complete)

    def flush(self) -> List[Dict[str, Any]]:
        remaining, self._buffer = self._buffer, ""
        return decode_messages(remaining)
