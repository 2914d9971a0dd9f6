"""
Supabase client access for the admin API.

The service key client is created lazily once per process and shared by all
request handlers. supabase-py is synchronous (httpx.Client under the hood), so
every .execute() issued from an async handler goes through db_call(), which
runs it in the default thread pool instead of blocking the event loop.
"""

import asyncio
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

SUPABASE_URL = (os.environ.get('SUPABASE_URL') or '').strip()
SUPABASE_KEY = (os.environ.get('SUPABASE_SERVICE_KEY') or '').strip()

_supabase_client = None


def get_supabase():
    """Return the shared Supabase client, creating it on first use."""
    global _supabase_client
    if _supabase_client is None:
        if not SUPABASE_URL or not SUPABASE_KEY:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
        from supabase import create_client
        _supabase_client = create_client(SUPABASE_URL, SUPABASE_KEY)
        logger.info("Supabase client initialised for %s", SUPABASE_URL)
    return _supabase_client


async def db_call(fn):
    """Run a synchronous Supabase call in a thread pool."""
    return await asyncio.to_thread(fn)


def first_row(result):
    """First row of a PostgREST response, or None."""
    if result is not None and result.data:
        return result.data[0]
    return None
