"""Server-sent-event framing for OpenAI-style streamed completions."""

from __future__ import annotations

import codecs
import json
import logging
import re
from typing import Any

DONE_SENTINEL = "[DONE]"

_RECORD_START = re.compile(r"^data: ", re.MULTILINE)

_logger = logging.getLogger(__name__)


class SSEFramer:
    """Turn successive network reads into complete JSON records.

    A read may hold any number of records and may stop in the middle of one.
    The unparseable tail of a read is kept and prepended to the next read, so
    every record is produced exactly once however the transport split the
    byte stream.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""
        self.done = False

    @property
    def pending(self) -> str:
        """Text held back from the previous read."""
        return self._partial

    def feed(self, raw: bytes) -> list[dict[str, Any]]:
        if self.done:
            return []

        text = self._decoder.decode(raw)
        if self._partial:
            text = self._partial + text
            self._partial = ""

        records: list[dict[str, Any]] = []
        pieces = _RECORD_START.split(text)
        last = len(pieces) - 1
        for index, piece in enumerate(pieces):
            if not piece:
                continue
            stripped = piece.strip()
            if stripped == DONE_SENTINEL:
                self.done = True
                break
            if not stripped:
                continue
            try:
                record = json.loads(stripped)
            except json.JSONDecodeError:
                if index == last:
                    # unterminated record, completed by a later read
                    self._partial = piece
                else:
                    _logger.debug("Skipping malformed streaming record: %s", stripped)
                continue
            if not isinstance(record, dict):
                _logger.debug("Skipping non-object streaming record: %s", stripped)
                continue
            records.append(record)
        return records
