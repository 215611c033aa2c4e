"""
Apportioned cost ledger and CSV export

Splits each person's monthly payroll cost across activities according to
their attestations, and renders the result as the claim's cost CSV.
"""
import csv
import io
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence, Tuple

from models.domain import AmountType, MonthlyAttestation, PayrollLedgerEntry, UNALLOCATED_LABEL
from services.apportionment import person_key

logger = logging.getLogger(__name__)

SCALED_SUFFIX = " [apportionment scaled to 100%]"
SCALE_TOLERANCE = 0.01

CSV_HEADERS = [
    'Month',
    'Person Email',
    'Person Name',
    'Activity',
    'Apportionment %',
    'Apportionment Hours',
    'Gross Wages',
    'Superannuation',
    'On-Costs',
    'Total Amount',
    'Basis',
    'Source File',
    'Upload Date',
]


@dataclass
class ApportionedCost:
    """One (month, person, activity) row of the cost ledger"""
    month: date
    person_identifier: str
    gross_wages: float
    superannuation: float
    on_costs: float
    total_amount: float
    person_email: Optional[str] = None
    person_name: Optional[str] = None
    activity_id: Optional[str] = None
    activity_name: Optional[str] = None
    apportionment_percent: Optional[float] = None
    apportionment_hours: Optional[float] = None
    basis_text: str = ''
    source_file: Optional[str] = None
    uploaded_at: Optional[datetime] = None


def _fractions(attestations: List[MonthlyAttestation]) -> Tuple[List[Tuple[MonthlyAttestation, float]], bool]:
    """
    (attestation, fraction) pairs for one person/month, and whether percent
    values had to be scaled to reach 100.

    Percent records win when a month mixes percent and hours records.
    """
    percent = [a for a in attestations if a.amount_type == AmountType.PERCENT]
    if percent:
        if len(percent) != len(attestations):
            logger.warning(
                f"[CostLedger] Ignoring hours attestations mixed with percent for "
                f"{percent[0].person_identifier}/{percent[0].month}"
            )
        total = sum(a.amount_value for a in percent)
        scaled = abs(total - 100) > SCALE_TOLERANCE
        if total <= 0:
            return [(a, 0.0) for a in percent], scaled
        divisor = total if scaled else 100.0
        return [(a, a.amount_value / divisor) for a in percent], scaled

    total_hours = sum(a.amount_value for a in attestations)
    return [
        (a, a.amount_value / total_hours if total_hours > 0 else 0.0)
        for a in attestations
    ], False


def apportion_ledger(
    entries: Sequence[PayrollLedgerEntry],
    attestations: Sequence[MonthlyAttestation],
    activity_names: Optional[Dict[str, str]] = None,
) -> List[ApportionedCost]:
    """
    Split payroll cost by attestation.

    Person/months without attestations come back as one unapportioned row
    carrying the summed totals.
    """
    activity_names = activity_names or {}

    ledger_by_key: Dict[Tuple[str, date], List[PayrollLedgerEntry]] = defaultdict(list)
    for entry in entries:
        ledger_by_key[(person_key(entry.person_identifier), entry.month)].append(entry)

    atts_by_key: Dict[Tuple[str, date], List[MonthlyAttestation]] = defaultdict(list)
    for att in attestations:
        atts_by_key[(person_key(att.person_identifier), att.month)].append(att)

    rows: List[ApportionedCost] = []
    for key in sorted(ledger_by_key, key=lambda k: (k[1], k[0])):
        group = ledger_by_key[key]
        base = group[0]
        gross = sum(e.gross_wages for e in group)
        sup = sum(e.superannuation for e in group)
        on_costs = sum(e.on_costs for e in group)
        total = sum(e.total_amount for e in group)

        atts = atts_by_key.get(key)
        if not atts:
            rows.append(ApportionedCost(
                month=base.month,
                person_identifier=base.person_identifier,
                person_email=base.person_email,
                person_name=base.person_name,
                gross_wages=round(gross, 2),
                superannuation=round(sup, 2),
                on_costs=round(on_costs, 2),
                total_amount=round(total, 2),
                basis_text=base.basis_text,
                source_file=base.source_file,
                uploaded_at=base.uploaded_at,
            ))
            continue

        pairs, scaled = _fractions(atts)
        basis = base.basis_text + (SCALED_SUFFIX if scaled else '')
        for att, fraction in pairs:
            rows.append(ApportionedCost(
                month=base.month,
                person_identifier=base.person_identifier,
                person_email=base.person_email or att.person_email,
                person_name=base.person_name,
                activity_id=att.activity_id,
                activity_name=(
                    activity_names.get(att.activity_id) or att.activity_name
                    if att.activity_id else UNALLOCATED_LABEL
                ),
                apportionment_percent=round(fraction * 100, 2),
                apportionment_hours=att.amount_value if att.amount_type == AmountType.HOURS else None,
                gross_wages=round(gross * fraction, 2),
                superannuation=round(sup * fraction, 2),
                on_costs=round(on_costs * fraction, 2),
                total_amount=round(total * fraction, 2),
                basis_text=basis,
                source_file=base.source_file,
                uploaded_at=base.uploaded_at,
            ))

    return rows


def _cell(value) -> str:
    if value is None:
        return ''
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def export_csv(rows: Sequence[ApportionedCost]) -> str:
    """Render the apportioned ledger as CSV text (header row first)"""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator='\n')
    writer.writerow(CSV_HEADERS)
    for row in rows:
        writer.writerow([
            row.month.isoformat(),
            row.person_email or row.person_identifier,
            row.person_name or '',
            row.activity_name or 'Unapportioned',
            _cell(row.apportionment_percent),
            _cell(row.apportionment_hours),
            _cell(row.gross_wages),
            _cell(row.superannuation),
            _cell(row.on_costs),
            _cell(row.total_amount),
            row.basis_text or '',
            row.source_file or '',
            row.uploaded_at.date().isoformat() if row.uploaded_at else '',
        ])
    return buffer.getvalue()
