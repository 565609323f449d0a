"""
Bulk Text Parser
Turns loosely structured pasted text into groups of cage records.

Grammar, one line at a time:
- A party header does not start with a digit, contains a letter and is at
  least HEADER_MIN_LENGTH characters long. It opens a new group.
- A record is "<cage no> <bird count> <weight> [rate]" separated by any
  whitespace. Records only count under an open header.
- Anything else is skipped and reported, never raised.
"""

import re
from typing import Optional, Tuple

from poultry_erp.schemas.output import BulkParseResult, ParsedGroup, ParsedRecord, SkippedLine
from poultry_erp.utils.logging import setup_logging, log_skipped_lines
from poultry_erp.config import get_config


logger = setup_logging(__name__)
config = get_config()

_HAS_LETTER = re.compile(r"[A-Za-z]")


def is_header(line: str, min_length: int = None) -> bool:
    """Whether a stripped line names a new party group."""
    if min_length is None:
        min_length = config.HEADER_MIN_LENGTH
    return (
        len(line) >= min_length
        and not line[0].isdigit()
        and bool(_HAS_LETTER.search(line))
    )


def parse_record(line: str, allow_rate: bool = False) -> Tuple[Optional[ParsedRecord], str]:
    """
    Parse one record line.

    Returns:
        (record, reason) - record is None when the line is unusable and
        reason then says why
    """
    tokens = line.split()
    if len(tokens) < 3:
        return None, "unrecognized"

    try:
        sequence_no = int(tokens[0])
        count = int(tokens[1])
        weight = float(tokens[2])
    except ValueError:
        return None, "malformed_record"

    rate = None
    if allow_rate and len(tokens) >= 4:
        try:
            rate = float(tokens[3])
        except ValueError:
            rate = None

    if sequence_no < 0 or count < 0 or weight < 0 or (rate is not None and rate < 0):
        return None, "negative_value"

    return ParsedRecord(sequence_no=sequence_no, count=count, weight=weight, rate=rate), ""


def parse_bulk_text(text: str, allow_rate: bool = False) -> BulkParseResult:
    """
    Parse pasted text into party groups.

    Args:
        text: Pasted text, one record or header per line
        allow_rate: Read an optional fourth token as the per-kg rate

    Returns:
        BulkParseResult with groups in order of appearance and the
        non-blank lines that were skipped
    """
    result = BulkParseResult()
    current: Optional[ParsedGroup] = None

    for line_number, raw_line in enumerate(text.splitlines(), 1):
        line = raw_line.strip()
        if not line:
            continue

        if is_header(line):
            current = ParsedGroup(party_name=line)
            result.groups.append(current)
            continue

        record, reason = parse_record(line, allow_rate)
        if record is None:
            result.skipped.append(SkippedLine(line_number=line_number, text=line, reason=reason))
        elif current is None:
            result.skipped.append(SkippedLine(line_number=line_number, text=line, reason="no_active_header"))
        else:
            current.records.append(record)

    log_skipped_lines(
        logger,
        "bulk_text",
        [s.line_number for s in result.skipped],
        details=sorted({s.reason for s in result.skipped}),
    )
    logger.debug(f"Parsed {len(result.groups)} group(s), {len(result.records)} record(s)")
    return result


def parse_line_units(text: str, allow_rate: bool = True) -> BulkParseResult:
    """
    Parse pasted cage lines for a single delivery.

    Headers are not required; every record line lands in one unnamed group
    and header-like lines are ignored.
    """
    group = ParsedGroup(party_name="")
    result = BulkParseResult()
    result.groups.append(group)

    for line_number, raw_line in enumerate(text.splitlines(), 1):
        line = raw_line.strip()
        if not line or is_header(line):
            continue

        record, reason = parse_record(line, allow_rate)
        if record is None:
            result.skipped.append(SkippedLine(line_number=line_number, text=line, reason=reason))
        else:
            group.records.append(record)

    log_skipped_lines(logger, "line_units", [s.line_number for s in result.skipped])
    return result
