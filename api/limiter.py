"""
api/limiter.py -- Shared slowapi rate limiter instance.

api/main.py mounts it as middleware; api/routes/v1/auth.py applies the
per-IP login limit with @limiter.limit(). One shared instance means one
counter store -- separate instances per module would never trip.

The per-IP limit complements, and does not replace, the per-account lockout
in auth/lockout.py: the limiter slows credential stuffing across many
accounts, the lockout stops guessing against one.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    return get_settings().login_rate_limit
