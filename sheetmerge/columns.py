# sheetmerge/columns.py

from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Sequence

from openpyxl.worksheet.worksheet import Worksheet


_SCALAR_TYPES = (str, int, float, bool, Decimal, datetime, date, time)


@dataclass(frozen=True)
class Column:
    header: str
    key: str


# ============================================================
# column model
# ============================================================

def read_header_row(worksheet: Worksheet) -> List[Any]:
    """Values of the worksheet's first row, left to right."""
    for row in worksheet.iter_rows(min_row=1, max_row=1, values_only=True):
        return list(row)
    return []


def strip_placeholder(values: Sequence[Any]) -> List[Any]:
    """
    Drop the leading slot of a 1-based row-value array.

    Some spreadsheet readers return row values with an unused index 0. A list
    that does not start with an empty slot is returned unchanged.
    """
    values = list(values)
    if values and values[0] is None:
        return values[1:]
    return values


def derive_columns(first_row_values: Sequence[Any]) -> List[Column]:
    """
    Build the column model from a template's header row.

    Every non-empty cell becomes one column whose header and key are the
    cell's string value. An empty row gives an empty model.
    """
    columns: List[Column] = []
    for value in first_row_values:
        if value is None or value == "":
            continue
        name = str(value)
        columns.append(Column(header=name, key=name))
    return columns


def apply_columns(worksheet: Worksheet, columns: Sequence[Column]) -> None:
    """
    Write the column headers into row 1, one per column from A onwards.

    Header cells past the last column are cleared so row 1 always matches the
    model.
    """
    for idx, column in enumerate(columns, 1):
        worksheet.cell(row=1, column=idx, value=column.header)

    for idx in range(len(columns) + 1, worksheet.max_column + 1):
        cell = worksheet.cell(row=1, column=idx)
        if cell.value is not None:
            cell.value = None


# ============================================================
# rows
# ============================================================

def cell_value(value: Any) -> Any:
    if value is None or isinstance(value, _SCALAR_TYPES):
        return value
    return str(value)


def row_values(columns: Sequence[Column], row: Dict[str, Any]) -> List[Any]:
    """
    Column-ordered cell values for one row.

    Fields without a matching column are dropped; columns without a field
    stay empty.
    """
    return [cell_value(row.get(column.key)) for column in columns]


def append_record(
    worksheet: Worksheet,
    columns: Sequence[Column],
    row: Dict[str, Any],
) -> None:
    worksheet.append(row_values(columns, row))
