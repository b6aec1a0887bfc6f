from __future__ import annotations

import csv
import io
import json
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from pydantic import BaseModel


class ImportRow(BaseModel):
    date: date
    description: str
    amount: Decimal
    raw: str | None = None


class StatementParseResult(BaseModel):
    rows: list[ImportRow]
    total_rows: int
    skipped_rows: int = 0


FIELD_ALIASES: dict[str, list[str]] = {
    "date": [
        "date",
        "transaction date",
        "trans date",
        "posting date",
        "post date",
        "date processed",
        "data",
        "fecha",
    ],
    "description": [
        "description",
        "merchant",
        "merchant name",
        "details",
        "reference",
        "lançamento",
        "lancamento",
        "descrição",
        "descricao",
        "descripcion",
    ],
    "amount": ["amount", "value", "valor", "monto", "importe"],
    "debit": ["debit", "withdrawal", "charge", "purchase"],
    "credit": ["credit", "deposit", "payment"],
}

DATE_FORMATS = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%d/%m/%Y",
    "%m-%d-%Y",
    "%d.%m.%Y",
    "%d %b %Y",
    "%d %B %Y",
)


def parse_statement_csv(contents: str) -> StatementParseResult:
    """Parse statement text into signed import rows.

    Expense sign is preserved as written; debit/credit column pairs become
    negative/positive amounts. Rows missing a date, description or amount
    are skipped.
    """
    reader = csv.reader(io.StringIO(contents.lstrip("\ufeff")))
    rows = [row for row in reader if any(cell.strip() for cell in row)]
    if not rows:
        raise ValueError("CSV missing header row.")

    fieldnames = rows[0]
    date_header = find_header(fieldnames, FIELD_ALIASES["date"])
    description_header = find_header(fieldnames, FIELD_ALIASES["description"])
    amount_header = find_header(fieldnames, FIELD_ALIASES["amount"])
    debit_header = find_header(fieldnames, FIELD_ALIASES["debit"])
    credit_header = find_header(fieldnames, FIELD_ALIASES["credit"])

    if not date_header or not description_header or not (amount_header or debit_header):
        raise ValueError("Unsupported CSV format: date, description and amount columns are required.")

    parsed: list[ImportRow] = []
    skipped = 0
    for raw_row in rows[1:]:
        row = row_to_dict(fieldnames, raw_row)
        result = parse_row(
            row,
            date_header=date_header,
            description_header=description_header,
            amount_header=amount_header,
            debit_header=debit_header,
            credit_header=credit_header,
        )
        if result is None:
            skipped += 1
        else:
            parsed.append(result)

    return StatementParseResult(rows=parsed, total_rows=len(parsed), skipped_rows=skipped)


def parse_row(
    row: dict[str, str | None],
    *,
    date_header: str,
    description_header: str,
    amount_header: str | None,
    debit_header: str | None,
    credit_header: str | None,
) -> ImportRow | None:
    date_value = parse_date(row.get(date_header))
    if date_value is None:
        return None

    description = clean_text(row.get(description_header))
    if not description:
        return None

    amount = parse_amount(row, amount_header, debit_header, credit_header)
    if amount is None:
        return None

    return ImportRow(
        date=date_value,
        description=description,
        amount=amount,
        raw=json.dumps(
            {"date": date_value.isoformat(), "description": description, "amount": str(amount)},
            ensure_ascii=False,
        ),
    )


def parse_amount(
    row: dict[str, str | None],
    amount_header: str | None,
    debit_header: str | None,
    credit_header: str | None,
) -> Decimal | None:
    if amount_header:
        amount_value = parse_decimal(row.get(amount_header))
        if amount_value is not None:
            return amount_value

    if debit_header:
        debit_value = parse_decimal(row.get(debit_header))
        if debit_value:
            return -abs(debit_value)

    if credit_header:
        credit_value = parse_decimal(row.get(credit_header))
        if credit_value:
            return abs(credit_value)

    return None


def parse_date(value: str | None) -> date | None:
    cleaned = clean_text(value)
    if not cleaned:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(cleaned).date()
    except ValueError:
        return None


def parse_decimal(value: str | None) -> Decimal | None:
    cleaned = clean_text(value)
    if not cleaned:
        return None

    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]

    cleaned = re.sub(r"[^0-9.,+\-]", "", cleaned)
    cleaned = _normalize_separators(cleaned)

    if cleaned.startswith("-"):
        negative = not negative
        cleaned = cleaned[1:]
    elif cleaned.startswith("+"):
        cleaned = cleaned[1:]

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None

    return -amount if negative else amount


def find_header(fieldnames: list[str], candidates: list[str]) -> str | None:
    normalized = [(name, normalize_header(name)) for name in fieldnames if name]
    for candidate in candidates:
        cand_norm = normalize_header(candidate)
        for name, norm in normalized:
            if norm == cand_norm:
                return name
    for candidate in candidates:
        cand_norm = normalize_header(candidate)
        for name, norm in normalized:
            if len(cand_norm) > 3 and cand_norm in norm:
                return name
    return None


def row_to_dict(fieldnames: list[str], row: list[str]) -> dict[str, str | None]:
    if len(row) < len(fieldnames):
        row = row + [""] * (len(fieldnames) - len(row))
    if len(row) > len(fieldnames):
        row = row[: len(fieldnames)]
    return dict(zip(fieldnames, row))


def normalize_header(value: str) -> str:
    return re.sub(r"[^a-z0-9çãõáéíóú]", "", value.strip().lower())


def clean_text(value: str | None) -> str:
    return value.strip() if value else ""


def _normalize_separators(value: str) -> str:
    # "1.234,56" and "1,234.56" both become "1234.56"; a lone comma is decimal.
    if "," in value and "." in value:
        if value.rfind(",") > value.rfind("."):
            return value.replace(".", "").replace(",", ".")
        return value.replace(",", "")
    if "," in value:
        head, _, tail = value.rpartition(",")
        if len(tail) == 3 and head.lstrip("+-").isdigit():
            return value.replace(",", "")
        return value.replace(",", ".")
    return value
