class RescueError(Exception):
    """Base exception for order orchestration failures."""
    pass


# ---------------------------------------------------------------------------
# Validation: bad input, rejected before any read or write
# ---------------------------------------------------------------------------

class OrderValidationError(RescueError):
    pass


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------

class NotFound(RescueError):
    pass


class OrderNotFound(NotFound):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class ListingNotFound(NotFound):
    def __init__(self, listing_id: str) -> None:
        super().__init__(f"Listing {listing_id} not found")
        self.listing_id = listing_id


class CourierNotFound(NotFound):
    def __init__(self, courier_id: str) -> None:
        super().__init__(f"Courier profile {courier_id} not found")
        self.courier_id = courier_id


class NotificationNotFound(NotFound):
    def __init__(self, notification_id: str) -> None:
        super().__init__(f"Notification {notification_id} not found")
        self.notification_id = notification_id


# ---------------------------------------------------------------------------
# Permission: the caller is not the party it claims to act as
# ---------------------------------------------------------------------------

class NotOrderParty(RescueError):
    pass


# ---------------------------------------------------------------------------
# Preconditions: the current state does not allow the operation
# ---------------------------------------------------------------------------

class PreconditionFailed(RescueError):
    pass


class ListingUnavailable(PreconditionFailed):
    def __init__(self, status: str) -> None:
        super().__init__(f"Listing is no longer active (status: {status})")
        self.status = status


class InsufficientQuantity(PreconditionFailed):
    def __init__(self, requested: int, remaining: int) -> None:
        super().__init__(f"Insufficient quantity. Only {remaining} left.")
        self.requested = requested
        self.remaining = remaining


class ListingExpired(PreconditionFailed):
    def __init__(self) -> None:
        super().__init__("Listing has expired")


class OrderNotAwaitingCourier(PreconditionFailed):
    def __init__(self, status: str) -> None:
        super().__init__(f"Order cannot be accepted (status: {status})")
        self.status = status


class CourierAtCapacity(PreconditionFailed):
    def __init__(self, max_concurrent_orders: int) -> None:
        super().__init__(
            f"You have reached your maximum of {max_concurrent_orders} concurrent rescues."
        )
        self.max_concurrent_orders = max_concurrent_orders


class AccountLocked(PreconditionFailed):
    def __init__(self, user_id: str) -> None:
        super().__init__("Account is locked because of a low trust score")
        self.user_id = user_id


class InvalidCode(PreconditionFailed):
    def __init__(self) -> None:
        super().__init__("Invalid code for the current stage of this order")


class OrderTerminal(PreconditionFailed):
    def __init__(self, status: str) -> None:
        super().__init__(f"Order is already {status}")
        self.status = status


class CancelRateLimited(PreconditionFailed):
    def __init__(self, limit: int, window_hours: int) -> None:
        super().__init__(
            f"Cancellation limit reached. You may not cancel more than {limit} orders "
            f"within {window_hours} hours."
        )
        self.limit = limit
        self.window_hours = window_hours


class TooCloseToPickup(PreconditionFailed):
    def __init__(self, cutoff_minutes: int) -> None:
        super().__init__(
            f"Cannot cancel within {cutoff_minutes} minutes of scheduled pickup. "
            "Contact the seller directly."
        )
        self.cutoff_minutes = cutoff_minutes
