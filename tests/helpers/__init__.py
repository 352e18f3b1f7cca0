"""Test helpers: in-memory Supabase fake and a scriptable connector."""

from tests.helpers.fake_connector import FAKE_WEBHOOK_SECRET, FakeConnector, sign_fake
from tests.helpers.fake_supabase import FakeSupabase

__all__ = ["FAKE_WEBHOOK_SECRET", "FakeConnector", "FakeSupabase", "sign_fake"]
