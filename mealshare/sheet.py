import enum
import logging
import re
from collections import namedtuple
from decimal import ROUND_HALF_UP, Decimal

import requests

logger = logging.getLogger(__name__)

LINE_SPLIT_PATTERN = re.compile(r"\r?\n")
# A comma is a separator only when an even number of quotes follows it on the line.
CELL_SPLIT_PATTERN = re.compile(r',(?=(?:(?:[^"]*"){2})*[^"]*$)')
EDGE_QUOTE_PATTERN = re.compile(r'^"|"$')
FLOAT_PREFIX_PATTERN = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")

RATE_LABELS = {"mil rate", "meal rate", "rate"}
GRID_RESERVED_LABELS = {"joma", "total", "tot / day"}
SUMMARY_STOP_NAMES = {"check"}
PLACEHOLDER_EMAIL_DOMAIN = "example.com"


class SheetFetchError(RuntimeError):
    """Raised when a published sheet cannot be downloaded."""


class TableKind(enum.Enum):
    GRID = "grid"
    SUMMARY = "summary"
    SIMPLE_LIST = "simple_list"
    NONE = "none"


SummaryColumns = namedtuple("SummaryColumns", ["name", "cost", "balance"])
ListColumns = namedtuple("ListColumns", ["name", "meals", "paid"])


def is_summary_name_label(cell):
    return "meal details" in cell or cell == "name"


def is_summary_cost_label(cell):
    return cell == "cost" or "total cost" in cell


def is_summary_balance_label(cell):
    return "available" in cell or "balance" in cell


def is_list_name_label(cell):
    return "name" in cell or "member" in cell


def is_list_meal_label(cell):
    return "meal" in cell or "count" in cell


def is_list_paid_label(cell):
    return "paid" in cell or "amount" in cell


# Column roles in resolution order. The summary table's cost and balance
# columns must sit to the right of its name column.
SUMMARY_COLUMN_RULES = [
    ("name", is_summary_name_label),
    ("cost", is_summary_cost_label),
    ("balance", is_summary_balance_label),
]
LIST_COLUMN_RULES = [
    ("name", is_list_name_label),
    ("meals", is_list_meal_label),
    ("paid", is_list_paid_label),
]


def split_csv_line(line):
    return [EDGE_QUOTE_PATTERN.sub("", cell).strip() for cell in CELL_SPLIT_PATTERN.split(line)]


def parse_float(value):
    """Parse the leading number of ``value`` the way a spreadsheet export reads it.

    ``"12 meals"`` gives ``12.0``; text without a leading number gives ``None``.
    """
    match = FLOAT_PREFIX_PATTERN.match(value or "")
    if not match:
        return None
    return float(match.group(1))


def parse_float_or_zero(value):
    parsed = parse_float(value)
    return parsed if parsed is not None else 0.0


def cell_at(cells, index):
    if index is None or index >= len(cells):
        return ""
    return cells[index]


def first_index(cells, predicate, start=0):
    for idx in range(start, len(cells)):
        if predicate(cells[idx]):
            return idx
    return None


def resolve_columns(lower_cells, rules, anchor_role=None):
    columns = {}
    start = 0
    for role, predicate in rules:
        idx = first_index(lower_cells, predicate, start)
        columns[role] = idx
        if role == anchor_role:
            if idx is None:
                return columns
            start = idx + 1
    return columns


def placeholder_email(name):
    local_part = re.sub(r"\s", "", name.lower())
    return f"{local_part}@{PLACEHOLDER_EMAIL_DOMAIN}"


def list_placeholder_email(name):
    return f"{name}@{PLACEHOLDER_EMAIL_DOMAIN}"


def find_rate(cells, lower_cells):
    rate_idx = first_index(lower_cells, lambda cell: cell in RATE_LABELS)
    if rate_idx is None or rate_idx + 1 >= len(cells):
        return None
    value = parse_float(cells[rate_idx + 1])
    if value is None or value <= 0:
        return None
    return value


def find_grid_columns(cells, lower_cells):
    if lower_cells[0] != "date":
        return None
    names = {
        idx: cell
        for idx, cell in enumerate(cells)
        if idx > 0 and cell and lower_cells[idx] not in GRID_RESERVED_LABELS
    }
    if len(names) <= 1:
        return None
    return names


class GridScan:
    """Accumulates the sheet-wide values found in one pass over every row.

    Holds the meal rate (last positive one wins), the most recent meal grid
    header and the per-person meal counts read from "Total" rows below it.
    The first count recorded for a name is kept; later "Total" rows are
    usually money rows and never overwrite it.
    """

    def __init__(self):
        self.extracted_rate = None
        self.header_row = None
        self.column_names = {}
        self.meal_counts = {}

    @property
    def kind(self):
        return TableKind.GRID if self.header_row is not None else TableKind.NONE

    def feed(self, row_index, cells):
        lower_cells = [cell.lower() for cell in cells]

        rate = find_rate(cells, lower_cells)
        if rate is not None:
            self.extracted_rate = rate

        column_names = find_grid_columns(cells, lower_cells)
        if column_names is not None:
            self.header_row = row_index
            self.column_names = column_names
        elif self.header_row is not None and row_index > self.header_row and lower_cells[0] == "total":
            self.record_totals(cells)
        return self

    def record_totals(self, cells):
        for column, name in self.column_names.items():
            value = parse_float(cell_at(cells, column))
            if value is None:
                continue
            self.meal_counts.setdefault(name.lower(), value)

    def meals_for(self, name):
        return self.meal_counts.get(name.lower())


def scan_grid(rows):
    scan = GridScan()
    for row_index, cells in enumerate(rows):
        scan.feed(row_index, cells)
    return scan


def find_summary_columns(cells):
    lower_cells = [cell.lower() for cell in cells]
    columns = resolve_columns(lower_cells, SUMMARY_COLUMN_RULES, anchor_role="name")
    if any(columns.get(role) is None for role, _ in SUMMARY_COLUMN_RULES):
        return None
    return SummaryColumns(columns["name"], columns["cost"], columns["balance"])


def find_list_columns(header_line):
    # The simple list header is split on every comma, quoted or not.
    headers = [EDGE_QUOTE_PATTERN.sub("", cell).strip() for cell in header_line.lower().split(",")]
    columns = resolve_columns(headers, LIST_COLUMN_RULES)
    if columns["name"] is None or columns["meals"] is None:
        return None
    return ListColumns(columns["name"], columns["meals"], columns["paid"])


def detect_tables(lines, rows):
    """Yield candidate tables as ``(kind, columns, first_data_row)`` in precedence order.

    Every summary table header is offered top to bottom, then the simple list
    read from the first line.
    """
    for row_index, cells in enumerate(rows):
        columns = find_summary_columns(cells)
        if columns is not None:
            yield TableKind.SUMMARY, columns, row_index + 1

    list_columns = find_list_columns(lines[0])
    if list_columns is not None:
        yield TableKind.SIMPLE_LIST, list_columns, 1


def round_half_up(value, places="0.01"):
    # Exact binary ties such as 1.125 round away from zero.
    return float(Decimal(value).quantize(Decimal(places), rounding=ROUND_HALF_UP))


def resolve_meals(name, cost, scan):
    grid_meals = scan.meals_for(name)
    if grid_meals is not None:
        return grid_meals
    if scan.extracted_rate and scan.extracted_rate > 0:
        return round_half_up(cost / scan.extracted_rate)
    return 0.0


def is_summary_terminator(name):
    lowered = name.lower()
    return not name or "total" in lowered or lowered in SUMMARY_STOP_NAMES


def read_summary_table(rows, start, columns, scan):
    people = []
    seen_names = set()
    last_column = max(columns)

    for row_index in range(start, len(rows)):
        cells = rows[row_index]
        if len(cells) <= last_column:
            break

        name = cells[columns.name]
        if is_summary_terminator(name):
            break

        cost_text = cells[columns.cost]
        balance_text = cells[columns.balance]
        if cost_text == "" and balance_text == "":
            break

        if name.lower() in seen_names:
            continue
        seen_names.add(name.lower())

        cost = parse_float_or_zero(cost_text)
        balance = parse_float_or_zero(balance_text)
        people.append(
            {
                "id": f"sheet-summary-{row_index}",
                "name": name,
                "email": placeholder_email(name),
                "meals": resolve_meals(name, cost, scan),
                # Rebuilt so that contribution - cost == balance; custom_balance stays authoritative.
                "contribution": cost + balance,
                "custom_balance": balance,
            }
        )
    return people


def read_simple_list(rows, columns):
    people = []
    seen_names = set()

    for row_index in range(1, len(rows)):
        cells = rows[row_index]
        if len(cells) <= columns.name:
            continue
        name = cells[columns.name]
        if not name or name.lower() in seen_names:
            continue
        seen_names.add(name.lower())

        contribution = 0.0
        if columns.paid is not None:
            contribution = parse_float_or_zero(cell_at(cells, columns.paid))
        people.append(
            {
                "id": f"sheet-list-{row_index}",
                "name": name,
                "email": list_placeholder_email(name),
                "meals": parse_float_or_zero(cell_at(cells, columns.meals)),
                "contribution": contribution,
            }
        )
    return people


def build_parse_result(people, has_contribution, extracted_rate=None):
    return {
        "people": people,
        "has_contribution": has_contribution,
        "extracted_rate": extracted_rate,
    }


def parse_sheet_csv(text):
    """Turn a published meal sheet into per-person meal and money records.

    Never raises for odd content; a sheet with no recognizable table gives an
    empty ``people`` list and ``has_contribution`` False.
    """
    lines = LINE_SPLIT_PATTERN.split(text or "")
    if len(lines) < 2:
        return build_parse_result([], False)

    rows = [split_csv_line(line) for line in lines]
    scan = scan_grid(rows)

    for kind, columns, start in detect_tables(lines, rows):
        if kind is TableKind.SUMMARY:
            people = read_summary_table(rows, start, columns, scan)
            if people:
                logger.info(
                    "Parsed %d people from summary table at row %d (grid=%s, rate=%s)",
                    len(people),
                    start - 1,
                    scan.kind.value,
                    scan.extracted_rate,
                )
                return build_parse_result(people, True, scan.extracted_rate)
            continue

        people = read_simple_list(rows, columns)
        logger.info("Parsed %d people from simple list", len(people))
        return build_parse_result(people, columns.paid is not None, scan.extracted_rate)

    logger.warning("No recognizable meal table in sheet (%d lines)", len(lines))
    return build_parse_result([], False, scan.extracted_rate)


def decode_csv_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def fetch_sheet_csv(url, timeout=None, session=None):
    http = session or requests
    try:
        response = http.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as exc:
        logger.error("Sheet fetch failed for %s: %s", url, exc)
        raise SheetFetchError(f"Failed to fetch sheet: {exc}") from exc
    return decode_csv_bytes(response.content) or ""


def fetch_sheet_data(url, timeout=None):
    return parse_sheet_csv(fetch_sheet_csv(url, timeout=timeout))
