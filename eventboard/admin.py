"""Owner-mode PIN gate.

The gate only toggles management controls in the UI. The PIN check and the
resulting flag both live on the client side of the trust boundary: anyone can
set the cookie or call the endpoints directly. It is not access control.
"""

from __future__ import annotations

from dataclasses import dataclass

ADMIN_COOKIE = "eventboard_admin"


def check_admin_pin(submitted: str | None, expected: str | None) -> bool:
    """Return True when the submitted PIN equals the configured one."""
    if not expected or submitted is None:
        return False
    return submitted == expected


@dataclass(frozen=True)
class ViewerContext:
    """Per-request view of who is looking at the board."""

    user_id: str
    is_anonymous: bool = True
    is_admin: bool = False

    def as_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "is_anonymous": self.is_anonymous,
            "is_admin": self.is_admin,
        }
