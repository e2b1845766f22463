"""
Choice between full and differential (modified since) search filters.
"""

import logging
from datetime import datetime
from typing import Optional

from ldap_registry.timestamps import TimestampFormat

logger = logging.getLogger(__name__)

PLACEHOLDER = '{0}'


def build_query(full_query: str, differential_query: str, timestamp_format: TimestampFormat,
                modified_since: Optional[datetime] = None) -> str:
    """
    Return the filter to run.

    Args:
        full_query: Filter matching the whole population
        differential_query: Filter template with a single ``{0}`` placeholder
        timestamp_format: Directory timestamp format
        modified_since: Only entries modified after this instant, or None for all

    Returns:
        The full filter when ``modified_since`` is None, otherwise the
        differential filter with the formatted timestamp substituted
    """
    if modified_since is None:
        return full_query
    return differential_query.replace(PLACEHOLDER, timestamp_format.format(modified_since))


class QueryPlanner:
    """Holds the filter pair for one entity type."""

    def __init__(self, full_query: str, differential_query: str, timestamp_format: TimestampFormat):
        if differential_query.count(PLACEHOLDER) != 1:
            raise ValueError(f"Differential query must contain exactly one {PLACEHOLDER} placeholder: {differential_query}")
        self.full_query = full_query
        self.differential_query = differential_query
        self.timestamp_format = timestamp_format

    def query_for(self, modified_since: Optional[datetime] = None) -> str:
        query = build_query(self.full_query, self.differential_query, self.timestamp_format, modified_since)
        if modified_since is None:
            logger.debug(f"Using full query: {query}")
        else:
            logger.debug(f"Using differential query: {query}")
        return query
