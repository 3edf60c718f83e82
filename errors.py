class RelayError(Exception):
    """Base class for relay failures."""

    reason = "relay-error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)


class StoreUnavailable(RelayError):
    """Presence or room backend could not be reached."""

    reason = "store-unavailable"


class QueueUnavailable(RelayError):
    """Delivery queue backend could not be reached."""

    reason = "delivery-uncertain"


class Unauthorized(RelayError):
    reason = "Unauthorized"


class MalformedEvent(RelayError):
    reason = "malformed-event"


class HeartbeatTimeout(RelayError):
    reason = "Heartbeat timeout"
