import logging
from supabase import create_client, Client

from dojo import config

logger = logging.getLogger(__name__)

_client = None


def get_client() -> Client:
    """Return the shared Supabase client, creating it on first use."""
    global _client
    if _client is None:
        if not config.SUPABASE_URL or not config.SUPABASE_KEY:
            logger.error("Missing SUPABASE_URL or SUPABASE_KEY in .env file")
            raise ValueError("Missing SUPABASE_URL or SUPABASE_KEY in .env file")
        try:
            _client = create_client(config.SUPABASE_URL, config.SUPABASE_KEY)
        except Exception as e:
            logger.error(f"Error initializing Supabase client: {str(e)}")
            raise
    return _client


def set_client(client):
    """Replace the shared client (scripts and tests)."""
    global _client
    _client = client
