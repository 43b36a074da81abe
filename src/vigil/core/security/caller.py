"""Caller identity and ownership checks.

Every service operation receives the authenticated caller explicitly. There
is no ambient "current user": a write or read for ``user_id`` is only allowed
when the caller is authenticated and is that user.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Caller:
    user_id: str
    authenticated: bool = True

    def owns(self, user_id: str) -> bool:
        """Whether this caller may act on ``user_id``'s signals."""
        return self.authenticated and bool(self.user_id) and self.user_id == user_id

