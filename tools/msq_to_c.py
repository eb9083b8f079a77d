"""
Tune Table -> C Array Converter
-------------------------------
Reads a calibration project text file (a TunerStudio .msq tune in practice),
scrolls to the load bins, rpm bins and table sections, and writes the table
as a C array-of-arrays literal followed by the two bin arrays.

Every data cell gets an inline comment with its row/column index and the
matching load/rpm bin so the generated array can be pasted straight into
firmware sources and still be read by a human.

Usage:
  python msq_to_c.py INPUT_FILE LOAD_SECTION_NAME RPM_SECTION_NAME TABLE_NAME [GRID_SIZE]

Example:
  python msq_to_c.py currenttune.msq veLoadBins veRpmBins veTable

Notes:
  - Sections are scanned in file order: load bins, rpm bins, then the table.
  - Either bins section name may be "none" to skip that axis.
  - GRID_SIZE defaults to 16 (16x16 table, 16 bins per axis).
  - Output goes to output.c in the current directory.
"""

import argparse
import datetime
import os
import sys
from decimal import ROUND_HALF_UP, Context, Decimal
from typing import Callable, List, Optional, Sequence, TextIO

import numpy as np

TOOL_NAME = "msq_to_c"
OUTPUT_FILE = "output.c"
DEFAULT_GRID_SIZE = 16
SKIP_SECTION = "none"

# Generated sources are consumed by the firmware build on Windows too
EOL = "\r\n"

CELL_QUANTUM = Decimal("0.001")
# float32 max needs 39 integer digits plus the 3 decimals
CELL_CONTEXT = Context(prec=60)

TIMESTAMP_FORMAT = "%a %b %d %H:%M:%S %Z %Y"

USAGE_EXAMPLE = "  currenttune.msq veLoadBins veRpmBins veTable"

Echo = Callable[[str], None]


# -------- ERRORS --------
class ConversionError(Exception):
    """Base class for every fatal conversion error."""


class SectionNotFound(ConversionError):
    def __init__(self, marker: str, source: str):
        super().__init__(f"Section '{marker}' not found in {source}")
        self.marker = marker
        self.source = source


class UnexpectedEndOfInput(ConversionError):
    def __init__(self, source: str, what: str, expected: int, got: int):
        super().__init__(
            f"End of file in {source}: expected {expected} {what} but got {got}"
        )
        self.source = source
        self.what = what
        self.expected = expected
        self.got = got


class RowShapeMismatch(ConversionError):
    def __init__(self, source: str, line_no: int, row: int, expected: int, tokens: List[str]):
        super().__init__(
            f"{source}:{line_no}: table row {row} expected {expected} values "
            f"but got {len(tokens)}: {tokens}"
        )
        self.source = source
        self.line_no = line_no
        self.row = row
        self.expected = expected
        self.tokens = tokens


class MalformedNumber(ConversionError):
    def __init__(self, token: str, source: str, line_no: int):
        super().__init__(f"{source}:{line_no}: while reading {token!r}: not a number")
        self.token = token
        self.source = source
        self.line_no = line_no


class InvalidArgumentCount(ConversionError):
    def __init__(self, count: int):
        super().__init__(f"Four or five parameters expected, got {count}")
        self.count = count


# -------- INPUT --------
class SourceCursor:
    """Forward-only line reader over an open text stream.

    All section scans share one cursor, so a section can only be found
    after the previous one. The cursor never rewinds.
    """

    def __init__(self, stream: TextIO, name: Optional[str] = None):
        self.stream = stream
        self.name = name or getattr(stream, "name", "<stream>")
        self.line_no = 0

    def readline(self) -> Optional[str]:
        """Next line without its terminator, or None at end of stream"""
        line = self.stream.readline()
        if not line:
            return None
        self.line_no += 1
        return line.rstrip("\r\n")

    def next_data_line(self) -> Optional[str]:
        """Next non-blank line, trimmed, or None at end of stream"""
        while True:
            line = self.readline()
            if line is None:
                return None
            line = line.strip()
            if line:
                return line


def is_skipped(section_name: str) -> bool:
    return section_name.lower() == SKIP_SECTION


def locate(cursor: SourceCursor, marker: str, echo: Echo = print) -> SourceCursor:
    """Scroll the cursor to just past the first line containing marker"""
    echo(f"Reading from {cursor.name}, scrolling to {marker}")
    while True:
        line = cursor.readline()
        if line is None:
            raise SectionNotFound(marker, cursor.name)
        if marker in line:
            echo(f"Found {line}")
            return cursor


def parse_number(token: str, cursor: SourceCursor) -> float:
    # float() also takes "1_000", which is never a valid tune value
    if "_" in token:
        raise MalformedNumber(token, cursor.name, cursor.line_no)
    try:
        return float(token)
    except ValueError as e:
        raise MalformedNumber(token, cursor.name, cursor.line_no) from e


def parse_axis(cursor: SourceCursor, size: int, echo: Echo = print) -> np.ndarray:
    """Read `size` bin values, one per non-blank line"""
    bins = np.zeros(size, dtype=np.float32)
    for index in range(size):
        line = cursor.next_data_line()
        if line is None:
            raise UnexpectedEndOfInput(cursor.name, "bin values", size, index)
        bins[index] = parse_number(line, cursor)

    echo(f"Got bins {format_list(bins, '[]')}")
    return bins


def parse_table(cursor: SourceCursor, size: int, echo: Echo = print) -> np.ndarray:
    """Read a size x size table, one row of whitespace separated values per line.

    Shape is checked row by row while reading so the error points at the
    offending line. Nothing is returned unless every row parsed.
    """
    table = np.zeros((size, size), dtype=np.float32)
    for row in range(size):
        line = cursor.next_data_line()
        if line is None:
            raise UnexpectedEndOfInput(cursor.name, "table rows", size, row)

        tokens = line.split()
        if len(tokens) != size:
            raise RowShapeMismatch(cursor.name, cursor.line_no, row, size, tokens)

        table[row] = [parse_number(token, cursor) for token in tokens]
        echo(f"Got line {row}: {format_list(table[row], '[]')}")

    return table


# -------- OUTPUT --------
def format_special(value: float) -> Optional[str]:
    """Text for NaN and infinities, None for finite values"""
    if np.isnan(value):
        return "NaN"
    if np.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    return None


def format_cell(value: float) -> str:
    """Three decimals, ties rounded away from zero (0.0625 -> 0.063)"""
    special = format_special(value)
    if special is not None:
        return special
    # Half-up on the shortest decimal digits of the value
    rounded = Decimal(repr(float(value))).quantize(
        CELL_QUANTUM, rounding=ROUND_HALF_UP, context=CELL_CONTEXT)
    return "%3s" % rounded


def format_natural(value: float) -> str:
    """Shortest text that reads back as the same float32 (1000.0, 0.1).

    Magnitudes from 1e-3 up to 1e7 are positional, everything else is
    written as mantissa and exponent (1.0E7, 1.5E-4).
    """
    special = format_special(value)
    if special is not None:
        return special
    value = np.float32(value)
    if value == 0 or 1e-3 <= abs(value) < 1e7:
        return np.format_float_positional(value, trim="0")
    mantissa, exponent = np.format_float_scientific(value, trim="0", exp_digits=1).split("e")
    return f"{mantissa}E{int(exponent)}"


def format_list(values: Sequence[float], brackets: str = "{}") -> str:
    return brackets[0] + ", ".join(format_natural(v) for v in values) + brackets[1]


def format_timestamp(timestamp: datetime.datetime) -> str:
    return timestamp.strftime(TIMESTAMP_FORMAT)


def render_row(table: np.ndarray, load_index: int,
               load_bins: Optional[np.ndarray], rpm_bins: Optional[np.ndarray]) -> str:
    # Row comment keeps the index even when the load axis was skipped
    if load_bins is None:
        parts = [f"{{/* {load_index}\t*/"]
    else:
        parts = [f"{{/* {load_index} {format_cell(load_bins[load_index])}\t*/"]

    for rpm_index, value in enumerate(table[load_index]):
        if rpm_bins is None:
            label = f"{rpm_index}"
        else:
            label = f"{rpm_index} {format_natural(rpm_bins[rpm_index])}"
        parts.append(f"/* {label}*/{format_cell(value)},\t")

    parts.append("}," + EOL)
    return "".join(parts)


def render(table: np.ndarray,
           load_bins: Optional[np.ndarray] = None,
           rpm_bins: Optional[np.ndarray] = None,
           tool_name: str = TOOL_NAME,
           timestamp: Optional[datetime.datetime] = None) -> str:
    """Build the complete output.c text for a parsed table and its axes"""
    if timestamp is None:
        timestamp = datetime.datetime.now().astimezone()

    rows, _ = table.shape
    parts = [f"/* Generated by {tool_name} on {format_timestamp(timestamp)}*/{EOL}"]
    for load_index in range(rows):
        parts.append(render_row(table, load_index, load_bins, rpm_bins))

    if rpm_bins is not None:
        parts.append(f"{EOL}{EOL}/* rpm bins */{EOL}{EOL}")
        parts.append(format_list(rpm_bins))

    if load_bins is not None:
        parts.append(f"{EOL}{EOL}/* load bins */{EOL}{EOL}")
        parts.append(format_list(load_bins))

    return "".join(parts)


def write_output(text: str, out_path: str = OUTPUT_FILE) -> None:
    # newline="" keeps the CRLF terminators byte for byte
    with open(out_path, "w", encoding="utf-8", newline="") as f:
        f.write(text)


# -------- PIPELINE --------
def convert(input_path: str,
            load_section: str,
            rpm_section: str,
            table_name: str,
            size: int = DEFAULT_GRID_SIZE,
            out_path: str = OUTPUT_FILE,
            tool_name: str = TOOL_NAME,
            timestamp: Optional[datetime.datetime] = None,
            echo: Echo = print) -> str:
    """Parse all sections of input_path and write the C arrays to out_path.

    The output file is only opened once every section parsed, so a failed
    run leaves a previous output.c untouched. Returns the written text.
    """
    load_bins: Optional[np.ndarray] = None
    rpm_bins: Optional[np.ndarray] = None

    # .msq files are not always valid UTF-8; markers and numbers are ASCII
    with open(input_path, "r", encoding="utf-8", errors="replace") as f:
        cursor = SourceCursor(f, input_path)

        if not is_skipped(load_section):
            locate(cursor, load_section, echo)
            load_bins = parse_axis(cursor, size, echo)

        if not is_skipped(rpm_section):
            locate(cursor, rpm_section, echo)
            rpm_bins = parse_axis(cursor, size, echo)

        locate(cursor, table_name, echo)
        table = parse_table(cursor, size, echo)

    text = render(table, load_bins, rpm_bins, tool_name=tool_name, timestamp=timestamp)
    write_output(text, out_path)
    echo(f"✓ Wrote {out_path}")
    return text


# -------- CLI --------
def grid_size(value: str) -> int:
    try:
        size = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid grid size: {value!r}")
    if size <= 0:
        raise argparse.ArgumentTypeError(f"grid size must be positive, got {size}")
    return size


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="msq_to_c",
        description="Convert a tune table and its load/rpm bins into C arrays (output.c).",
        epilog="example:\n" + USAGE_EXAMPLE,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("input_file", help="Tune file to read (e.g. currenttune.msq)")
    parser.add_argument("load_section", help="Marker of the load bins section, or 'none'")
    parser.add_argument("rpm_section", help="Marker of the rpm bins section, or 'none'")
    parser.add_argument("table_name", help="Marker of the table section")
    parser.add_argument("grid_size", nargs="?", type=grid_size, default=DEFAULT_GRID_SIZE,
                        help=f"Table dimension N for an NxN table (default {DEFAULT_GRID_SIZE})")
    return parser


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    if len(argv) not in (4, 5):
        raise InvalidArgumentCount(len(argv))
    return build_parser().parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    argv = sys.argv[1:] if argv is None else list(argv)

    try:
        args = parse_args(argv)
    except InvalidArgumentCount as e:
        print(e)
        build_parser().print_usage()
        print("for example")
        print(USAGE_EXAMPLE)
        sys.exit(1)

    if not os.path.exists(args.input_file):
        raise SystemExit(f"File not found: {args.input_file}")

    try:
        convert(args.input_file, args.load_section, args.rpm_section,
                args.table_name, size=args.grid_size)
    except (ConversionError, OSError) as e:
        raise SystemExit(f"ERROR: {e}")


if __name__ == "__main__":
    main()
