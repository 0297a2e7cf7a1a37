"""
Shared CSV helpers for the overlay codecs.

Reading and writing go through the standard ``csv`` module; this module
adds delimiter sniffing for files saved by spreadsheet tools with a
locale-specific separator.
"""

import csv
import io
from typing import Iterable, Optional

DELIMITERS = (",", ";", "\t", "|")


def _count_outside_quotes(line: str, delimiter: str) -> int:
    in_quotes = False
    count = 0
    i = 0
    while i < len(line):
        ch = line[i]
        if ch == '"':
            if in_quotes and i + 1 < len(line) and line[i + 1] == '"':
                i += 2
                continue
            in_quotes = not in_quotes
        elif not in_quotes and ch == delimiter:
            count += 1
        i += 1
    return count


def detect_delimiter(text: str) -> str:
    """
    Guess the delimiter from the first non-empty lines.

    Counts each candidate outside quoted sections; ties go to the earlier
    candidate and comma is the default when nothing scores.
    """
    lines = [l for l in text.splitlines() if l.strip()][:10]
    best, best_score = ",", 0
    for d in DELIMITERS:
        score = sum(_count_outside_quotes(l, d) for l in lines)
        if score > best_score:
            best, best_score = d, score
    return best


def parse_csv(text: str, delimiter: Optional[str] = None) -> list[list[str]]:
    """
    Parse CSV text into rows of strings.

    Handles quoted cells with embedded delimiters, quotes and newlines.
    Fully blank rows are dropped.
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    d = delimiter or detect_delimiter(text)
    reader = csv.reader(io.StringIO(text, newline=""), delimiter=d)
    return [row for row in reader if any(c.strip() for c in row)]


def to_csv(rows: Iterable[Iterable], delimiter: str = ",") -> str:
    """Serialize rows with minimal quoting and ``\\n`` line endings."""
    buf = io.StringIO()
    writer = csv.writer(buf, delimiter=delimiter, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
    for row in rows:
        writer.writerow(["" if c is None else str(c) for c in row])
    return buf.getvalue()
