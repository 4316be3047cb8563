"""Random identifiers."""

import uuid


def generate_id() -> str:
    """Random UUID4 as 32 lowercase hex characters (alphanumerics only)."""
    return uuid.uuid4().hex
