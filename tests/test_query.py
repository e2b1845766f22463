#!/usr/bin/env python3
"""
Unit tests for the paged query executor.
"""

import os
import sys
import unittest
from unittest.mock import Mock

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_registry.errors import ProtocolError
from ldap_registry.query import PagedQuery, SearchHandler, count_results, process_query

from fakes import FakeConnectionFactory, entry

BASE_A = 'ou=a,dc=x'
BASE_B = 'ou=b,dc=x'


def make_factory(**kwargs):
    pages = {
        BASE_A: [[entry('cn=1,ou=a,dc=x'), entry('cn=2,ou=a,dc=x')], [entry('cn=3,ou=a,dc=x')]],
        BASE_B: [[entry('cn=4,ou=b,dc=x')]],
    }
    return FakeConnectionFactory(pages, **kwargs)


class Recorder(SearchHandler):
    def __init__(self, fail_on=None):
        self.dns = []
        self.closed = 0
        self.fail_on = fail_on

    def process(self, result):
        if result.dn == self.fail_on:
            raise ValueError(f"cannot process {result.dn}")
        self.dns.append(result.dn)

    def close(self):
        self.closed += 1


class TestPagedQuery(unittest.TestCase):
    """Test cases for PagedQuery."""

    def test_pages_then_bases_in_order(self):
        """Test that every page of a base is drained before the next base."""
        factory = make_factory()
        with PagedQuery(factory, [BASE_A, BASE_B], '(objectclass=*)', ['cn'], batch_size=2) as query:
            dns = [result.dn for result in query]

        self.assertEqual(dns, ['cn=1,ou=a,dc=x', 'cn=2,ou=a,dc=x', 'cn=3,ou=a,dc=x', 'cn=4,ou=b,dc=x'])
        self.assertEqual(query.pages, 3)
        self.assertEqual(query.count, 4)
        self.assertEqual([search[0] for search in factory.searches], [BASE_A, BASE_A, BASE_B])
        self.assertEqual(factory.searches[0][2], ['cn'])

    def test_one_session_per_base(self):
        """Test that sessions are opened per base and all released."""
        factory = make_factory()
        list(PagedQuery(factory, [BASE_A, BASE_B], '(objectclass=*)', batch_size=2))
        self.assertEqual(len(factory.sessions), 2)
        self.assertEqual(factory.sessions_open, 0)
        self.assertTrue(all(session.closed == 1 for session in factory.sessions))

    def test_unpaged(self):
        """Test that without a batch size no further page is requested."""
        factory = make_factory()
        dns = [result.dn for result in PagedQuery(factory, [BASE_A], '(objectclass=*)')]
        self.assertEqual(len(dns), 3)
        self.assertEqual(len(factory.searches), 1)

    def test_advance_and_close(self):
        """Test the producer interface."""
        factory = make_factory()
        query = PagedQuery(factory, [BASE_A, BASE_B], '(objectclass=*)', batch_size=2)
        first = query.advance()
        self.assertEqual(first.dn, 'cn=1,ou=a,dc=x')
        self.assertEqual(query.current_base, BASE_A)

        second = query.advance()
        self.assertEqual(second.dn, 'cn=2,ou=a,dc=x')
        # The previous result is released on advance
        self.assertEqual(first.handle, None)
        self.assertEqual(factory.handles[0].closed, 1)

        query.close()
        query.close()
        self.assertEqual(factory.sessions_open, 0)
        self.assertEqual(factory.handles[1].closed, 1)
        self.assertTrue(factory.all_enumerations_closed())
        self.assertIsNone(query.advance())

    def test_close_mid_page_releases_pending_results(self):
        """Test that leaving a query early releases results never handed out."""
        factory = FakeConnectionFactory({BASE_A: [[entry('cn=1,ou=a,dc=x'), entry('cn=2,ou=a,dc=x'),
                                                   entry('cn=3,ou=a,dc=x')]]})
        with PagedQuery(factory, [BASE_A], '(objectclass=*)', batch_size=5) as query:
            query.advance()

        self.assertEqual(factory.sessions_open, 0)
        self.assertEqual(len(factory.handles), 3)
        self.assertTrue(factory.all_handles_closed())
        self.assertTrue(factory.all_enumerations_closed())

    def test_end_of_sequence(self):
        """Test that advance keeps returning None once exhausted."""
        factory = make_factory()
        query = PagedQuery(factory, [BASE_B], '(objectclass=*)')
        self.assertIsNotNone(query.advance())
        self.assertIsNone(query.advance())
        self.assertIsNone(query.advance())
        self.assertEqual(factory.sessions_open, 0)
        self.assertTrue(factory.all_handles_closed())

    def test_empty_base(self):
        """Test a base without entries."""
        factory = FakeConnectionFactory({BASE_A: [[]], BASE_B: [[entry('cn=4,ou=b,dc=x')]]})
        dns = [result.dn for result in PagedQuery(factory, [BASE_A, BASE_B], '(objectclass=*)', batch_size=5)]
        self.assertEqual(dns, ['cn=4,ou=b,dc=x'])

    def test_no_bases(self):
        """Test an empty base list."""
        factory = make_factory()
        self.assertEqual(list(PagedQuery(factory, [], '(objectclass=*)')), [])
        self.assertEqual(factory.sessions, [])

    def test_open_is_eager(self):
        """Test that open searches the first base without consuming a result."""
        factory = make_factory()
        query = PagedQuery(factory, [BASE_A], '(objectclass=*)').open()
        self.assertEqual(len(factory.searches), 1)
        self.assertEqual(query.count, 0)
        query.close()

    def test_protocol_error_releases_everything(self):
        """Test that a failing base closes the query and propagates."""
        factory = make_factory(failing_bases=[BASE_B])
        query = PagedQuery(factory, [BASE_A, BASE_B], '(objectclass=*)', batch_size=2)
        delivered = []
        with self.assertRaises(ProtocolError):
            for result in query:
                delivered.append(result.dn)

        self.assertEqual(len(delivered), 3)
        self.assertEqual(factory.sessions_open, 0)
        self.assertTrue(factory.all_handles_closed())
        self.assertTrue(factory.all_enumerations_closed())

    def test_cleanup_failure_is_swallowed(self):
        """Test that a failing session close does not escape."""
        factory = make_factory()
        original = factory.open_session

        def open_session(batch_size=0):
            session = original(batch_size)
            session.close = Mock(side_effect=RuntimeError("connection reset"))
            return session

        factory.open_session = open_session
        self.assertEqual(len(list(PagedQuery(factory, [BASE_A], '(objectclass=*)'))), 3)


class TestProcessQuery(unittest.TestCase):
    """Test cases for the callback form."""

    def test_processes_every_result(self):
        """Test that the handler sees every result and is closed once."""
        factory = make_factory()
        handler = Recorder()
        count = process_query(handler, factory, [BASE_A, BASE_B], '(objectclass=*)', ['cn'], batch_size=2)

        self.assertEqual(count, 4)
        self.assertEqual(len(handler.dns), 4)
        self.assertEqual(handler.closed, 1)
        self.assertTrue(factory.all_handles_closed())
        self.assertEqual(factory.sessions_open, 0)

    def test_handler_failure(self):
        """Test that a handler failure still releases everything."""
        factory = make_factory()
        handler = Recorder(fail_on='cn=2,ou=a,dc=x')
        with self.assertRaises(ValueError):
            process_query(handler, factory, [BASE_A, BASE_B], '(objectclass=*)', batch_size=2)

        self.assertEqual(handler.dns, ['cn=1,ou=a,dc=x'])
        self.assertEqual(handler.closed, 1)
        self.assertTrue(factory.all_handles_closed())
        self.assertEqual(factory.sessions_open, 0)

    def test_search_failure_closes_handler(self):
        """Test that the handler is closed when the search fails."""
        factory = make_factory(failing_bases=[BASE_A])
        handler = Recorder()
        with self.assertRaises(ProtocolError):
            process_query(handler, factory, [BASE_A], '(objectclass=*)')
        self.assertEqual(handler.closed, 1)

    def test_count_results(self):
        """Test counting without attributes."""
        factory = make_factory()
        self.assertEqual(count_results(factory, [BASE_A, BASE_B], '(objectclass=*)', batch_size=2), 4)
        self.assertTrue(all(search[2] == [] for search in factory.searches))


if __name__ == '__main__':
    unittest.main()
