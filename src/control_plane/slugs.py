"""Slug generation for partners, workspaces and departments."""

import re
import secrets

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def slugify(value: str, max_length: int = 60) -> str:
    """Lowercase, hyphen-separated; falls back to a random slug."""
    slug = _NON_ALNUM.sub("-", value.lower()).strip("-")[:max_length].strip("-")
    return slug or f"ws-{secrets.token_hex(3)}"
