"""
Shared test setup.
Environment is fixed before any backend module is imported: auth_service needs
SUPABASE_JWT_SECRET at import time and crypto_utils reads ENCRYPTION_KEY once.
"""
import os
import sys

from cryptography.fernet import Fernet

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-with-at-least-32-bytes!")
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.pop("RENDER_EXTERNAL_URL", None)
os.environ.pop("BACKEND_PUBLIC_URL", None)

import pytest  # noqa: E402

from supabase_fake import FakeSupabase  # noqa: E402


@pytest.fixture
def supabase():
    return FakeSupabase()


@pytest.fixture(autouse=True)
def clear_connection_cache():
    from integrations import store
    store._connection_cache.clear()
    yield
    store._connection_cache.clear()
