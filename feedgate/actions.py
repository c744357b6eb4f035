from __future__ import annotations

from enum import Enum


class CriticalAction(str, Enum):
    """Closed set of irreversible actions the dispatcher can fire.

    Whether a variant may fire is bound by the policy's ``critical_actions``
    list; variants not listed there are refused outright.
    """

    PUBLISH_FEED = "publish_feed"
    RELEASE_ARCHIVE = "release_archive"
    BROADCAST_ALERT = "broadcast_alert"
    REVOKE_FEED = "revoke_feed"

    @classmethod
    def parse(cls, value: "str | CriticalAction") -> "CriticalAction":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise ValueError(f"unknown critical action: {value}") from None
