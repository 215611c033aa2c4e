"""
Payroll ledger reader - raw cost_ledger rows to PayrollLedgerEntry

Rows come from an external payroll import, already column-mapped. They are
trusted only loosely: a row with no person, an unreadable month or a bad
amount is skipped with a warning and the rest of the batch is kept.
"""
import logging
from typing import Any, Iterable, List, Mapping, Optional

from models.domain import PayrollLedgerEntry
from utils.datetime_utils import ensure_utc, parse_month

logger = logging.getLogger(__name__)


class InvalidPayrollRow(ValueError):
    """A ledger row that cannot be used for apportionment"""


def parse_amount(value: Any, field_name: str) -> float:
    """
    Parse a money amount; blanks are 0.

    Accepts numbers and strings like '$1,234.50'.

    Raises:
        InvalidPayrollRow: for non-numeric or negative amounts
    """
    if value is None or value == '':
        return 0.0
    if isinstance(value, str):
        value = value.strip().replace('$', '').replace(',', '')
        if not value:
            return 0.0
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise InvalidPayrollRow(f"{field_name} is not a number: {value!r}")
    if amount != amount or amount < 0:  # NaN or negative
        raise InvalidPayrollRow(f"{field_name} must be a non-negative number: {value!r}")
    return amount


def parse_ledger_row(row: Mapping[str, Any]) -> PayrollLedgerEntry:
    """
    Convert one raw ledger row.

    Raises:
        InvalidPayrollRow: if the row is unusable
    """
    person = row.get('person_identifier') or row.get('person_email')
    if not person or not str(person).strip():
        raise InvalidPayrollRow("missing person identifier")

    month = parse_month(row.get('month'))
    if month is None:
        raise InvalidPayrollRow(f"unreadable month: {row.get('month')!r}")

    total_raw = row.get('total_amount')
    total: Optional[float] = None
    if total_raw not in (None, ''):
        total = parse_amount(total_raw, 'total_amount')

    return PayrollLedgerEntry(
        id=str(row['id']) if row.get('id') is not None else None,
        project_id=row.get('project_id'),
        person_identifier=str(person).strip(),
        person_email=row.get('person_email'),
        person_name=row.get('person_name'),
        month=month,
        gross_wages=parse_amount(row.get('gross_wages'), 'gross_wages'),
        superannuation=parse_amount(row.get('superannuation'), 'superannuation'),
        on_costs=parse_amount(row.get('on_costs'), 'on_costs'),
        total_amount=total,
        basis_text=row.get('basis_text') or '',
        source_file=row.get('source_file'),
        uploaded_at=ensure_utc(row.get('uploaded_at')),
    )


def read_ledger_rows(rows: Iterable[Mapping[str, Any]]) -> List[PayrollLedgerEntry]:
    """
    Parse every usable row, skipping bad ones with a logged warning.
    """
    entries = []
    skipped = 0
    for index, row in enumerate(rows):
        try:
            entries.append(parse_ledger_row(row))
        except InvalidPayrollRow as e:
            skipped += 1
            logger.warning(f"[Payroll] Skipping ledger row {index} ({row.get('id', 'no id')}): {e}")

    if skipped:
        logger.warning(f"[Payroll] Skipped {skipped} of {skipped + len(entries)} ledger rows")
    return entries
