"""
Payroll ledger row parsing.
"""

from datetime import date, datetime, timezone

import pytest

from services.payroll_ledger import (
    InvalidPayrollRow,
    parse_amount,
    parse_ledger_row,
    read_ledger_rows,
)


def row(**overrides):
    base = {
        'id': 'pl_aaaa0001',
        'project_id': 'proj-1',
        'person_identifier': 'a@x.com',
        'person_email': 'a@x.com',
        'person_name': 'Ada',
        'month': '2025-06',
        'gross_wages': '6000',
        'superannuation': '660',
        'on_costs': '340',
        'total_amount': None,
        'basis_text': 'June payroll',
        'source_file': 'june.csv',
        'uploaded_at': datetime(2025, 7, 2, tzinfo=timezone.utc),
    }
    base.update(overrides)
    return base


class TestParseAmount:

    def test_currency_formatting(self):
        assert parse_amount('$1,234.50', 'gross_wages') == 1234.5

    def test_blank_is_zero(self):
        assert parse_amount(None, 'x') == 0.0
        assert parse_amount('', 'x') == 0.0
        assert parse_amount('  ', 'x') == 0.0

    def test_rejects_garbage(self):
        with pytest.raises(InvalidPayrollRow):
            parse_amount('twelve', 'gross_wages')

    def test_rejects_negative(self):
        with pytest.raises(InvalidPayrollRow):
            parse_amount(-5, 'on_costs')

    def test_rejects_nan(self):
        with pytest.raises(InvalidPayrollRow):
            parse_amount('nan', 'on_costs')


class TestParseLedgerRow:

    def test_total_defaults_to_components(self):
        entry = parse_ledger_row(row())

        assert entry.month == date(2025, 6, 1)
        assert entry.total_amount == 7000.0
        assert entry.person_name == 'Ada'
        assert entry.source_file == 'june.csv'

    def test_explicit_total_kept(self):
        entry = parse_ledger_row(row(total_amount='7100'))
        assert entry.total_amount == 7100.0

    def test_full_date_month_normalised(self):
        assert parse_ledger_row(row(month='2025-06-30')).month == date(2025, 6, 1)

    def test_falls_back_to_email(self):
        entry = parse_ledger_row(row(person_identifier=None))
        assert entry.person_identifier == 'a@x.com'

    def test_missing_person(self):
        with pytest.raises(InvalidPayrollRow):
            parse_ledger_row(row(person_identifier=None, person_email=None))

    def test_bad_month(self):
        with pytest.raises(InvalidPayrollRow):
            parse_ledger_row(row(month='June'))


class TestReadLedgerRows:

    def test_bad_rows_skipped_rest_kept(self, caplog):
        rows = [
            row(),
            row(id='pl_aaaa0002', month='not a month'),
            row(id='pl_aaaa0003', gross_wages='-1'),
            row(id='pl_aaaa0004', person_identifier='b@x.com', person_email='b@x.com'),
        ]

        entries = read_ledger_rows(rows)

        assert [e.id for e in entries] == ['pl_aaaa0001', 'pl_aaaa0004']
        assert 'Skipped 2 of 4' in caplog.text
