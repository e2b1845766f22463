"""
Directory timestamp formatting.

Directory servers disagree on the generalized time format they accept in
filters and return in ``modifyTimestamp``. The format is configured once as a
``strftime`` pattern and always applied in UTC.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from ldap_registry.errors import ProtocolError

logger = logging.getLogger(__name__)

OPENLDAP_FORMAT = '%Y%m%d%H%M%SZ'
ACTIVE_DIRECTORY_FORMAT = '%Y%m%d%H%M%S.0Z'


def to_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TimestampFormat:
    """Formats and parses directory timestamps with a fixed UTC clock."""

    def __init__(self, pattern: str = OPENLDAP_FORMAT):
        if not pattern:
            raise ValueError("Timestamp format must not be empty")
        self.pattern = pattern

    def format(self, value: datetime) -> str:
        return to_utc(value).strftime(self.pattern)

    def parse(self, value: Any) -> Optional[datetime]:
        """
        Parse a timestamp attribute value.

        ldap3 already converts generalized time to ``datetime`` when the
        server schema is known, so datetimes are passed through (normalized
        to UTC).

        Raises:
            ProtocolError: If the value does not match the configured format
        """
        if value is None:
            return None
        if isinstance(value, datetime):
            return to_utc(value)
        if isinstance(value, bytes):
            value = value.decode('utf-8')
        try:
            return datetime.strptime(str(value), self.pattern).replace(tzinfo=timezone.utc)
        except ValueError as e:
            raise ProtocolError(f"Failed to parse timestamp '{value}' with format '{self.pattern}': {e}") from e

    def __repr__(self) -> str:
        return f"TimestampFormat({self.pattern!r})"
