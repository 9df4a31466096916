"""Authentication / authorization helpers.

Auth is intentionally lightweight:

- Users table (email/username/password hash + is_admin flag)
- Stateless sessions: an HS256 JWT in an httpOnly `session` cookie

The token only carries identity (userId, email, username). Anything that
decides access (admin flag, subscription projection) is read fresh from the
database on each request.
"""

from .deps import current_session, require_admin, require_subscription, require_user
from .crud import bootstrap_admin_if_needed, create_user
from .security import SessionCodec

__all__ = [
    "current_session",
    "require_user",
    "require_admin",
    "require_subscription",
    "bootstrap_admin_if_needed",
    "create_user",
    "SessionCodec",
]
