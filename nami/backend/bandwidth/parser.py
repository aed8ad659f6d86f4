"""
bandwidth/parser.py

Incremental parser for `nethogs -t` (tracemode) output.

The OS pipe hands us arbitrary byte chunks, so a line may arrive split
across two reads. SamplerOutputParser keeps only the trailing partial line
between feed() calls and returns every line completed by the new chunk.

Line variants seen across nethogs builds:
    /usr/bin/curl/4242/1000\t12.5\t3.25
    /usr/bin/curl/4242/1000   12.5   3.25
    /usr/bin/curl/4242/1000\teth0\t12.5\t3.25      (older: device column)

Tracemode also prints 'Refresh:' separators between rounds; those and
anything without two trailing numeric fields are skipped.
"""

from __future__ import annotations

import codecs
import logging
import math
from typing import NamedTuple

from ..metrics import METRICS

logger = logging.getLogger(__name__)


class SamplerLine(NamedTuple):
    """One parsed tracemode line. Rates are in KB/s."""

    token: str
    sent: float
    received: float


def parse_line(line: str) -> SamplerLine | None:
    """Parse a single complete line, or None if it carries no rates."""
    line = line.strip()
    if not line or line.startswith("Refresh"):
        return None

    fields = line.rsplit(None, 2)
    if len(fields) != 3:
        return None
    head, sent_str, recv_str = fields
    try:
        sent = float(sent_str)
        received = float(recv_str)
    except ValueError:
        return None
    # Rates are finite and non-negative.
    if not all(math.isfinite(r) and r >= 0 for r in (sent, received)):
        return None

    # Drop the optional device column; tabs never appear inside the token.
    token = head.split("\t", 1)[0].strip()
    if not token:
        return None
    return SamplerLine(token, sent, received)


class SamplerOutputParser:
    """
    Splits a chunked byte/text stream into parsed lines.

    State is the trailing partial line (plus any multi-byte character split
    across reads).
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[SamplerLine]:
        """Append *chunk* and return the lines it completed."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        *complete, self._buffer = self._buffer.split("\n")
        return self._parse_all(complete)

    def flush(self) -> list[SamplerLine]:
        """Parse whatever is buffered as a final, unterminated line."""
        remainder, self._buffer = self._buffer + self._decoder.decode(b"", final=True), ""
        return self._parse_all([remainder])

    @property
    def pending(self) -> str:
        return self._buffer

    def _parse_all(self, lines: list[str]) -> list[SamplerLine]:
        parsed: list[SamplerLine] = []
        for line in lines:
            result = parse_line(line)
            if result is not None:
                parsed.append(result)
                METRICS.sampler_lines_parsed.inc()
            elif line.strip() and not line.startswith("Refresh"):
                METRICS.sampler_lines_skipped.inc()
                logger.debug("Unparseable sampler line: %r", line)
        return parsed
