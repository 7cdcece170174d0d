from __future__ import annotations


class TransientFetchFailure(RuntimeError):
    """Snapshot query failed; the previous snapshot stays in place."""


class MutationRejected(RuntimeError):
    def __init__(self, reason: str, *, action: str = "") -> None:
        super().__init__(reason)
        self.reason = reason
        self.action = action


class SubscriptionUnavailable(RuntimeError):
    """Event channel could not be established; callers fall back to polling."""


class ProfileLookupFailure(RuntimeError):
    def __init__(self, address: str, detail: str) -> None:
        super().__init__(f"profile lookup failed for {address}: {detail}")
        self.address = address
        self.detail = detail
