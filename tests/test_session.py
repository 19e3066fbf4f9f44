"""Tests for services.session."""
import unittest

from services.exceptions import Unauthenticated
from services.session import SessionProvider


class SessionProviderTests(unittest.TestCase):
    def setUp(self):
        self.session = SessionProvider()
        self.changes = []
        self.unsubscribe = self.session.subscribe(self.changes.append)

    def test_starts_signed_out(self):
        self.assertIsNone(self.session.current_user_id)
        with self.assertRaises(Unauthenticated):
            self.session.require_user()

    def test_sign_in_and_out_notify_listeners(self):
        self.session.sign_in('alice')
        self.assertEqual(self.session.require_user(), 'alice')
        self.session.sign_in('bob')
        self.session.sign_out()
        self.assertEqual(self.changes, ['alice', 'bob', None])

    def test_unchanged_identity_is_not_announced(self):
        self.session.sign_in('alice')
        self.session.sign_in('alice')
        self.session.sign_out()
        self.session.sign_out()
        self.assertEqual(self.changes, ['alice', None])

    def test_unsubscribe_stops_notifications(self):
        self.unsubscribe()
        self.unsubscribe()
        self.session.sign_in('alice')
        self.assertEqual(self.changes, [])

    def test_empty_user_id_is_rejected(self):
        with self.assertRaises(ValueError):
            self.session.sign_in('')
        self.assertIsNone(self.session.current_user_id)

    def test_only_actual_changes_are_logged(self):
        with self.assertNoLogs('services.session', level='INFO'):
            self.session.sign_out()

        with self.assertLogs('services.session', level='INFO') as logs:
            self.session.sign_in('alice')
            self.session.sign_in('alice')
            self.session.sign_out()
            self.session.sign_out()

        self.assertEqual(len(logs.output), 2)
        self.assertIn("signed in as 'alice'", logs.output[0])
        self.assertIn("Session for 'alice' signed out", logs.output[1])
