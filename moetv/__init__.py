"""MoeTV - subscription-gated video streaming backend.

This repository is backend-only:
- JSON API over FastAPI (auth, admin console, catalog, subscriptions).
- Stateless sessions: a signed JWT in an httpOnly `session` cookie.

Core concepts:
- A *user* carries a denormalized subscription projection
  (is_subscribed / subscription_type / subscription_expires).
- A *subscription* row is one billing period; every write to it is paired
  with a write to the owning user's projection in the same transaction.

See README for setup and usage.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
