# ============================================================
# access.py — Group allow/deny rules on resources
# ------------------------------------------------------------
# A resource with no rule for any of the user's groups is open.
# As soon as one of the user's groups has a rule, the user needs
# at least one "allowed" rule and no "denied" rule.
# Admins are never subject to these rules.
# ============================================================
from typing import Iterable

from booking.errors import AuthorizationError
from booking.models import AccessType, GroupResourceAccess


def is_access_granted(rules: Iterable[GroupResourceAccess]) -> bool:
    rules = list(rules)
    if not rules:
        return True
    if any(r.access_type == AccessType.DENIED.value for r in rules):
        return False
    return any(r.access_type == AccessType.ALLOWED.value for r in rules)


def ensure_access(rules: Iterable[GroupResourceAccess]):
    if not is_access_granted(rules):
        raise AuthorizationError("Access denied to this resource")
