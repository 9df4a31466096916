import secrets


def new_id() -> str:
    """Opaque, URL-safe row identifier."""
    return secrets.token_hex(12)
