#!/usr/bin/env python3
"""
Unit tests for differential query planning and timestamp formats.
"""

import os
import sys
import unittest
from datetime import datetime, timedelta, timezone

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_registry.errors import ProtocolError
from ldap_registry.planner import QueryPlanner, build_query
from ldap_registry.timestamps import ACTIVE_DIRECTORY_FORMAT, OPENLDAP_FORMAT, TimestampFormat, to_utc

FULL = '(objectclass=x)'
DIFFERENTIAL = '(&(objectclass=x)(!(modifyTimestamp<={0})))'


class TestBuildQuery(unittest.TestCase):
    """Test cases for filter selection."""

    def test_full_query_without_timestamp(self):
        """Test that no timestamp selects the full filter."""
        self.assertEqual(build_query(FULL, DIFFERENTIAL, TimestampFormat()), FULL)

    def test_differential_query(self):
        """Test placeholder substitution."""
        since = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.assertEqual(build_query(FULL, DIFFERENTIAL, TimestampFormat(), since),
                         '(&(objectclass=x)(!(modifyTimestamp<=20240101000000Z)))')

    def test_active_directory_format(self):
        """Test the Active Directory generalized time format."""
        since = datetime(2024, 1, 1, 12, 30, tzinfo=timezone.utc)
        self.assertEqual(build_query(FULL, DIFFERENTIAL, TimestampFormat(ACTIVE_DIRECTORY_FORMAT), since),
                         '(&(objectclass=x)(!(modifyTimestamp<=20240101123000.0Z)))')

    def test_timestamp_converted_to_utc(self):
        """Test that aware timestamps are formatted in UTC."""
        since = datetime(2024, 1, 1, 2, 0, tzinfo=timezone(timedelta(hours=2)))
        self.assertEqual(build_query(FULL, DIFFERENTIAL, TimestampFormat(), since),
                         '(&(objectclass=x)(!(modifyTimestamp<=20240101000000Z)))')

    def test_braces_elsewhere_untouched(self):
        """Test that only the placeholder is replaced."""
        template = '(&(description=a{b})(!(modifyTimestamp<={0})))'
        since = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.assertEqual(build_query(FULL, template, TimestampFormat(), since),
                         '(&(description=a{b})(!(modifyTimestamp<=20240101000000Z)))')


class TestQueryPlanner(unittest.TestCase):
    """Test cases for QueryPlanner."""

    def test_query_for(self):
        """Test both modes."""
        planner = QueryPlanner(FULL, DIFFERENTIAL, TimestampFormat())
        self.assertEqual(planner.query_for(), FULL)
        self.assertEqual(planner.query_for(datetime(2024, 1, 1)),
                         '(&(objectclass=x)(!(modifyTimestamp<=20240101000000Z)))')

    def test_requires_single_placeholder(self):
        """Test templates without exactly one placeholder."""
        with self.assertRaises(ValueError):
            QueryPlanner(FULL, '(objectclass=x)', TimestampFormat())
        with self.assertRaises(ValueError):
            QueryPlanner(FULL, '(&(a<={0})(b<={0}))', TimestampFormat())


class TestTimestampFormat(unittest.TestCase):
    """Test cases for TimestampFormat."""

    def test_parse_openldap(self):
        """Test parsing an OpenLDAP timestamp."""
        self.assertEqual(TimestampFormat(OPENLDAP_FORMAT).parse('20240102030405Z'),
                         datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))

    def test_parse_active_directory(self):
        """Test parsing an Active Directory timestamp."""
        self.assertEqual(TimestampFormat(ACTIVE_DIRECTORY_FORMAT).parse(b'20240102030405.0Z'),
                         datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))

    def test_parse_datetime_passthrough(self):
        """Test values already converted by the client library."""
        value = datetime(2024, 1, 2, 5, 4, 5, tzinfo=timezone(timedelta(hours=2)))
        self.assertEqual(TimestampFormat().parse(value), datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))

    def test_parse_none(self):
        """Test a missing value."""
        self.assertIsNone(TimestampFormat().parse(None))

    def test_parse_invalid(self):
        """Test a value in the wrong format."""
        with self.assertRaises(ProtocolError):
            TimestampFormat(OPENLDAP_FORMAT).parse('20240102030405.0Z')

    def test_format_parse_agree(self):
        """Test that a formatted instant parses back to itself."""
        fmt = TimestampFormat(ACTIVE_DIRECTORY_FORMAT)
        instant = datetime(2023, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
        self.assertEqual(fmt.parse(fmt.format(instant)), instant)

    def test_naive_is_utc(self):
        """Test that naive datetimes are taken to be UTC."""
        self.assertEqual(to_utc(datetime(2024, 1, 1)), datetime(2024, 1, 1, tzinfo=timezone.utc))

    def test_empty_pattern(self):
        """Test that an empty pattern is rejected."""
        with self.assertRaises(ValueError):
            TimestampFormat('')


if __name__ == '__main__':
    unittest.main()
