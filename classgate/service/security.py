from __future__ import annotations

import hashlib


def hash_sensitive_data(value: str) -> str:
    """Stable digest used in place of emails, identifiers and addresses in keys and audit rows."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
