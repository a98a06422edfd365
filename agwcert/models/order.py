import enum


class OrderStatus(str, enum.Enum):
    """The states of an ACME order.

    `7.1.6. Status Changes <https://tools.ietf.org/html/rfc8555#section-7.1.6>`_
    """

    # subclassing str simplifies json serialization using json.dumps
    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"

    @property
    def awaits_validation(self) -> bool:
        """True while the server has not yet decided about the order's authorizations."""
        return self in (OrderStatus.PENDING, OrderStatus.PROCESSING)
