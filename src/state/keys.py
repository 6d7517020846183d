from __future__ import annotations

import re
from typing import Dict, Optional


KEY_PREFIX = "grasp-"
KEY_SUFFIX = "-state"


def _kebab(name: str) -> str:
    # questionBank -> question-bank, user_profile -> user-profile
    s = re.sub(r"(?<=[a-z0-9])([A-Z])", r"-\1", name.strip())
    s = re.sub(r"[\s_]+", "-", s)
    return s.lower()


def _derive(page: str) -> str:
    return f"{KEY_PREFIX}{_kebab(page)}{KEY_SUFFIX}"


# Known pages of the application
PAGE_KEYS: Dict[str, str] = {
    name: _derive(name)
    for name in (
        "dashboard",
        "questionGeneration",
        "questionBank",
        "courseMaterials",
        "settings",
        "userProfile",
        "questionReview",
        "onboarding",
    )
}


def storage_key(page: str, table: Optional[Dict[str, str]] = None) -> str:
    """The one key under which `page` stores its StateRecord."""
    if not page or not page.strip():
        raise ValueError("page name is required")
    keys = PAGE_KEYS if table is None else table
    return keys.get(page) or _derive(page)


def legacy_storage_key(page: str) -> str:
    """Key used by the older per-page format (`<page>State`)."""
    return f"{page}State"


def is_state_key(key: str) -> bool:
    return key.startswith(KEY_PREFIX) and key.endswith(KEY_SUFFIX)


__all__ = [
    "PAGE_KEYS",
    "storage_key",
    "legacy_storage_key",
    "is_state_key",
]
