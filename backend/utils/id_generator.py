"""
Short prefixed IDs for evidence-trail records.

    ev_xxxxxxxx  evidence item
    ca_xxxxxxxx  core activity
    at_xxxxxxxx  monthly attestation

The random part is 8 lowercase base36 characters (36^8 ~ 2.8e12 per type).
"""
import re
import secrets
import string

ALPHABET = string.digits + string.ascii_lowercase
RANDOM_LENGTH = 8

PREFIXES = {
    'evidence': 'ev',
    'activity': 'ca',
    'attestation': 'at',
}

ID_PATTERN = re.compile(
    r'^(%s)_[0-9a-z]{%d}$' % ('|'.join(PREFIXES.values()), RANDOM_LENGTH)
)


def generate_id(record_type: str) -> str:
    """
    New random ID for record_type.

    Raises:
        ValueError: for an unknown record type
    """
    try:
        prefix = PREFIXES[record_type]
    except KeyError:
        raise ValueError(f"Unknown record type {record_type!r}; expected one of {sorted(PREFIXES)}")
    suffix = ''.join(secrets.choice(ALPHABET) for _ in range(RANDOM_LENGTH))
    return f"{prefix}_{suffix}"


def validate_id(value) -> bool:
    return isinstance(value, str) and bool(ID_PATTERN.match(value))


def generate_evidence_id() -> str:
    return generate_id('evidence')


def generate_activity_id() -> str:
    return generate_id('activity')


def generate_attestation_id() -> str:
    return generate_id('attestation')
