"""
CSV Import Service

Turns a user-supplied bank statement CSV into NormalizedTransactions.
Network free and side-effect free: persistence and de-duplication against
stored records are the connection manager's job.
"""

import logging
import os
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Tuple, Union

from dateutil import parser as date_parser

from .categorization import Categorizer
from .deduplication import TransactionDeduplicator
from .exceptions import BankErrorCode, CSVRowError
from .schemas import CSVImportConfig, CSVImportResult, CSVRowIssue, NormalizedTransaction


logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024
MAX_ROWS = 10000

ALLOWED_CONTENT_TYPES = {"text/csv", "application/csv", "text/plain", "application/vnd.ms-excel"}
ALLOWED_EXTENSIONS = {".csv", ".txt"}

FALLBACK_DATE_FORMATS = [
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%Y-%m-%d",
    "%d-%m-%Y",
    "%m-%d-%Y",
    "%d.%m.%Y",
    "%m.%d.%Y",
    "%Y/%m/%d",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d %Y",
    "%B %d %Y",
]

_FORMAT_TOKENS = re.compile(r"YYYY|yyyy|MMMM|MMM|MM|DD|dd|YY|yy")
_TOKEN_MAP = {
    "YYYY": "%Y", "yyyy": "%Y",
    "YY": "%y", "yy": "%y",
    "MMMM": "%B", "MMM": "%b", "MM": "%m",
    "DD": "%d", "dd": "%d",
}
_AMOUNT_NOISE = re.compile(r"[£$€¥₹,\s]")
_PLAIN_DECIMAL = re.compile(r"[+-]?(\d+(\.\d*)?|\.\d+)")

# Matches the DECIMAL(15, 2) amount column
AMOUNT_PRECISION = 15
AMOUNT_SCALE = 2
_CENT = Decimal("0.01")


def to_strftime(date_format: str) -> str:
    """'DD/MM/YYYY' style patterns to strftime; strftime patterns pass through."""
    if "%" in date_format:
        return date_format
    return _FORMAT_TOKENS.sub(lambda m: _TOKEN_MAP[m.group(0)], date_format)


def tokenize(content: str, delimiter: str = ",") -> Iterator[List[str]]:
    """
    Split CSV text into rows of trimmed fields.

    Double quotes wrap fields that contain the delimiter or newlines;
    "" inside a quoted field is a literal quote. Blank lines are skipped.
    """
    row: List[str] = []
    field: List[str] = []
    in_quotes = False
    i = 0
    length = len(content)

    def finish_row():
        row.append("".join(field).strip())
        field.clear()
        completed = list(row)
        row.clear()
        return completed

    while i < length:
        char = content[i]
        if in_quotes:
            if char == '"':
                if i + 1 < length and content[i + 1] == '"':
                    field.append('"')
                    i += 1
                else:
                    in_quotes = False
            else:
                field.append(char)
        elif char == '"':
            in_quotes = True
        elif char == delimiter:
            row.append("".join(field).strip())
            field.clear()
        elif char == "\r" or char == "\n":
            if char == "\r" and i + 1 < length and content[i + 1] == "\n":
                i += 1
            completed = finish_row()
            if any(completed):
                yield completed
        else:
            field.append(char)
        i += 1

    if field or row:
        completed = finish_row()
        if any(completed):
            yield completed


def parse_amount(value: str) -> Decimal:
    """
    Parse an amount such as '£1,234.56', '(50.25)' or '-3'.

    Raises:
        ValueError: Empty, unparsable, or does not fit 13 digits and 2 decimals
    """
    cleaned = _AMOUNT_NOISE.sub("", value or "")
    if not cleaned:
        raise ValueError("Amount field is empty")

    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]

    if not _PLAIN_DECIMAL.fullmatch(cleaned):
        raise ValueError(f"Invalid amount: {value}")

    amount = Decimal(cleaned)
    if amount.adjusted() >= AMOUNT_PRECISION - AMOUNT_SCALE:
        raise ValueError(f"Invalid amount: {value} is too large")
    if amount != amount.quantize(_CENT):
        raise ValueError(f"Invalid amount: {value} has more than {AMOUNT_SCALE} decimal places")

    return -amount if negative else amount


def parse_date(value: str, date_format: Optional[str] = None) -> date:
    """
    Try the configured format, then FALLBACK_DATE_FORMATS, then dateutil.

    Raises:
        ValueError: No format matched
    """
    value = (value or "").strip()
    if not value:
        raise ValueError("Date field is empty")

    formats = []
    if date_format:
        formats.append(to_strftime(date_format))
    formats.extend(f for f in FALLBACK_DATE_FORMATS if f not in formats)

    for fmt in formats:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue

    try:
        return date_parser.parse(value, dayfirst=True).date()
    except (ValueError, OverflowError):
        raise ValueError(f"Invalid date format: {value}")


def validate_csv_upload(filename: Optional[str], content_type: Optional[str], size: int) -> Optional[str]:
    """
    Check an uploaded file before reading it.

    Returns:
        Error message, or None if the upload is acceptable
    """
    if size > MAX_FILE_SIZE:
        return f"File too large. Maximum size is {MAX_FILE_SIZE // (1024 * 1024)}MB"

    extension = os.path.splitext(filename or "")[1].lower()
    if content_type not in ALLOWED_CONTENT_TYPES and extension not in ALLOWED_EXTENSIONS:
        return "Invalid file type. Please upload a CSV file"

    return None


class CSVImportService:
    """
    Parse CSV statements.

    Each row is handled in isolation: a bad row is reported with its
    1-based file row number and the rest of the file is still parsed.
    """

    def __init__(
        self,
        categorizer: Optional[Categorizer] = None,
        max_file_size: int = MAX_FILE_SIZE,
        max_rows: int = MAX_ROWS
    ):
        self.categorizer = categorizer
        self.max_file_size = max_file_size
        self.max_rows = max_rows

    def parse_csv(self, content: str, config: Optional[CSVImportConfig] = None) -> CSVImportResult:
        config = config or CSVImportConfig()

        if len(content.encode("utf-8")) > self.max_file_size:
            return self._rejected(
                BankErrorCode.FILE_TOO_LARGE,
                f"File too large. Maximum size is {self.max_file_size // (1024 * 1024)}MB"
            )

        rows = list(tokenize(content, config.delimiter))
        if not rows:
            return self._rejected(BankErrorCode.EMPTY_FILE, "CSV file is empty")

        headers: List[str] = rows[0] if config.has_headers else []
        data_rows = rows[1:] if config.has_headers else rows

        if len(data_rows) > self.max_rows:
            return self._rejected(
                BankErrorCode.ROW_LIMIT_EXCEEDED,
                f"Too many rows. Maximum is {self.max_rows} rows",
                total_rows=len(data_rows)
            )

        columns, column_errors = self._resolve_columns(headers, config)
        if column_errors:
            return CSVImportResult(
                success=False,
                total_rows=len(data_rows),
                failed_imports=len(data_rows),
                errors=column_errors
            )

        transactions: List[NormalizedTransaction] = []
        errors: List[CSVRowIssue] = []
        header_offset = 2 if config.has_headers else 1

        for index, row in enumerate(data_rows):
            row_number = index + header_offset
            try:
                transactions.append(self._parse_row(row, columns, config))
            except CSVRowError as e:
                errors.append(CSVRowIssue(row=row_number, error=e.message))
            except (ValueError, ArithmeticError) as e:
                errors.append(CSVRowIssue(row=row_number, error=str(e)))

        TransactionDeduplicator.assign_csv_external_ids(transactions)

        if errors:
            logger.info(f"CSV parse: {len(transactions)} rows parsed, {len(errors)} rows rejected")

        return CSVImportResult(
            success=len(transactions) > 0,
            total_rows=len(data_rows),
            successful_imports=len(transactions),
            failed_imports=len(errors),
            errors=errors,
            transactions=transactions
        )

    @staticmethod
    def _rejected(code: BankErrorCode, message: str, total_rows: int = 0) -> CSVImportResult:
        return CSVImportResult(
            success=False,
            total_rows=total_rows,
            errors=[CSVRowIssue(row=0, error=message, code=code.value)]
        )

    def _resolve_columns(
        self,
        headers: List[str],
        config: CSVImportConfig
    ) -> Tuple[Dict[str, int], List[CSVRowIssue]]:
        """
        Map logical columns to positions, once per file.

        Missing required columns are errors; missing optional ones are dropped.
        """
        required = {
            "date": config.date_column,
            "amount": config.amount_column,
            "description": config.description_column,
        }
        optional = {
            "category": config.category_column,
            "balance": config.balance_column,
        }

        columns: Dict[str, int] = {}
        errors: List[CSVRowIssue] = []

        if config.has_headers and not any(headers):
            errors.append(CSVRowIssue(
                row=1,
                error="No headers found in CSV file",
                code=BankErrorCode.MISSING_REQUIRED_COLUMN.value
            ))
            return columns, errors

        for name, column in required.items():
            index = self._column_index(column, headers, config.has_headers)
            if index is None:
                errors.append(CSVRowIssue(
                    row=1,
                    error=f"Required column '{column}' not found",
                    code=BankErrorCode.MISSING_REQUIRED_COLUMN.value
                ))
            else:
                columns[name] = index

        for name, column in optional.items():
            if column is None or column == "":
                continue
            index = self._column_index(column, headers, config.has_headers)
            if index is None:
                logger.warning(f"Optional CSV column '{column}' not found; ignoring it")
            else:
                columns[name] = index

        return columns, errors

    @staticmethod
    def _column_index(column: Union[str, int], headers: List[str], has_headers: bool) -> Optional[int]:
        if has_headers:
            wanted = str(column).strip().lower()
            for index, header in enumerate(headers):
                if header.strip().lower() == wanted:
                    return index
            return None
        try:
            index = int(column)
        except (TypeError, ValueError):
            return None
        return index if index >= 0 else None

    def _parse_row(self, row: List[str], columns: Dict[str, int], config: CSVImportConfig) -> NormalizedTransaction:
        required_width = max(columns["date"], columns["amount"], columns["description"]) + 1
        if len(row) < required_width:
            raise CSVRowError("Row does not have enough columns")

        transaction_date = parse_date(row[columns["date"]], config.date_format)
        amount = parse_amount(row[columns["amount"]])
        description = row[columns["description"]].strip() or "Unknown transaction"

        category = None
        if "category" in columns and columns["category"] < len(row):
            category = row[columns["category"]].strip() or None
        if category is None and self.categorizer is not None:
            category = self.categorizer(description, amount)

        balance_after = None
        if "balance" in columns and columns["balance"] < len(row) and row[columns["balance"]].strip():
            try:
                balance_after = parse_amount(row[columns["balance"]])
            except ValueError:
                balance_after = None

        return NormalizedTransaction(
            # Replaced by assign_csv_external_ids once all rows are parsed
            external_id="",
            amount=amount,
            currency=config.currency,
            description=description,
            transaction_date=transaction_date,
            type="income" if amount >= 0 else "expense",
            category=category,
            balance_after=balance_after
        )
