"""
modqueue Collaborators — injected identity, authorization and profile hooks.

The queue never talks to an auth SDK directly. The embedding application
injects:

- ``require_admin(user_id, auth_token)`` — raises when the caller is not an admin
- ``admin_user_ids`` — static allow-list checked when require_admin is absent or fails
- ``get_user_profile(user_id)`` — cosmetic display-name / photo lookup
- a grouping strategy ``report -> group_key``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from modqueue.engine.errors import AuthorizationError
from modqueue.engine.logging import log, log_authorization_denied

logger = logging.getLogger("modqueue.engine.collaborators")

DEFAULT_DISPLAY_NAME = "Admin"

RequireAdmin = Callable[[str, Any], Any]


@dataclass(frozen=True)
class UserProfile:
    display_name: Optional[str] = None
    photo_url: Optional[str] = None


ProfileLookup = Callable[[str], Union[UserProfile, Mapping[str, Any], None]]


class AdminAuthorizer:
    """
    Admin check for checkout operations. Fails closed.

    ``require_admin`` is tried first; any exception it raises falls through to
    the allow-list. If neither grants access, AuthorizationError is raised.
    """

    def __init__(
        self,
        require_admin: Optional[RequireAdmin] = None,
        admin_user_ids: Iterable[str] = (),
    ):
        self._require_admin = require_admin
        self._admin_user_ids = frozenset(admin_user_ids)

    def verify(self, user_id: str, auth_token: Any = None, operation: str = "checkout") -> None:
        reason = None
        if self._require_admin is not None:
            try:
                self._require_admin(user_id, auth_token)
                return
            except Exception as e:
                reason = str(e) or e.__class__.__name__
                logger.debug(f"require_admin rejected {user_id}: {reason}")

        if user_id and user_id in self._admin_user_ids:
            return

        log(log_authorization_denied(user_id, operation, reason))
        raise AuthorizationError(
            "Administrator access required",
            user_id=user_id,
            operation=operation,
        )

    def is_admin(self, user_id: str, auth_token: Any = None) -> bool:
        try:
            self.verify(user_id, auth_token)
            return True
        except AuthorizationError:
            return False


def resolve_profile(lookup: Optional[ProfileLookup], user_id: str) -> UserProfile:
    """
    Resolve a worker's profile. A missing lookup or an empty result falls back
    to the "Admin" display name.
    """
    raw = lookup(user_id) if lookup is not None else None

    if isinstance(raw, UserProfile):
        profile = raw
    elif raw:
        profile = UserProfile(
            display_name=raw.get("display_name") or raw.get("displayName"),
            photo_url=(
                raw.get("photo_url")
                or raw.get("profilePictureUrlFull")
                or raw.get("photoURL")
            ),
        )
    else:
        profile = UserProfile()

    if not profile.display_name:
        profile = UserProfile(display_name=DEFAULT_DISPLAY_NAME, photo_url=profile.photo_url)
    return profile


# ---------------------------------------------------------------------------
# Grouping strategies
# ---------------------------------------------------------------------------

def group_by_item(report: Mapping[str, Any]) -> str:
    """One group per reported item: ``{item_type}_{item_id}``."""
    item_type = report.get("reported_item_type")
    item_id = report.get("reported_item_id")
    if not item_type or not item_id:
        return ""
    return f"{item_type}_{item_id}"


def group_by_user(report: Mapping[str, Any]) -> str:
    """One group per reported user, regardless of which item was reported."""
    user_id = report.get("reported_user_id")
    if not user_id:
        return ""
    return f"user_{user_id}"
