"""
Utility functions
"""
from .datetime_utils import ensure_utc, utcnow, month_start, month_end, parse_month
from .id_generator import generate_id, validate_id

__all__ = [
    'ensure_utc',
    'utcnow',
    'month_start',
    'month_end',
    'parse_month',
    'generate_id',
    'validate_id',
]
