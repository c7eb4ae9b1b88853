"""
Dispatch state enumerations and their transition tables.
"""

import enum


class VehicleClass(str, enum.Enum):
    """Requested vehicle class."""
    MINI = "MINI"
    LCV = "LCV"
    OPEN = "OPEN"
    CONTAINER = "CONTAINER"
    TRAILER = "TRAILER"
    TIPPER = "TIPPER"
    TANKER = "TANKER"
    BULKER = "BULKER"


class BroadcastStatus(str, enum.Enum):
    """Broadcast fulfillment status."""
    ACTIVE = "ACTIVE"  # Visible to transporters, nothing filled yet
    PARTIALLY_FILLED = "PARTIALLY_FILLED"  # Some trucks reserved, still needs more
    FULLY_FILLED = "FULLY_FILLED"  # Every truck reserved
    EXPIRED = "EXPIRED"  # Time limit exceeded
    CANCELLED = "CANCELLED"  # Customer cancelled


OPEN_BROADCAST_STATUSES = (BroadcastStatus.ACTIVE, BroadcastStatus.PARTIALLY_FILLED)
RESERVABLE_BROADCAST_STATUSES = OPEN_BROADCAST_STATUSES
TERMINAL_BROADCAST_STATUSES = (BroadcastStatus.EXPIRED, BroadcastStatus.CANCELLED)


class ReservationStatus(str, enum.Enum):
    """Transporter reservation status."""
    PENDING = "PENDING"  # Counter reserved, drivers not all resolved
    CONFIRMED = "CONFIRMED"  # Every slot accepted by a driver
    PARTIALLY_RELEASED = "PARTIALLY_RELEASED"  # Some slots given back
    RELEASED = "RELEASED"  # Every slot given back


class AssignmentStatus(str, enum.Enum):
    """Driver assignment status for one truck slot."""
    PENDING_NOTIFY = "PENDING_NOTIFY"  # Created, driver may still be unbound
    NOTIFIED = "NOTIFIED"  # Alert sent, response deadline running
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"  # Broadcast closed before the driver resolved it
    RELEASED = "RELEASED"  # Given back by the transporter before an offer went out


UNRESOLVED_ASSIGNMENT_STATUSES = (AssignmentStatus.PENDING_NOTIFY, AssignmentStatus.NOTIFIED)


class DriverDecision(str, enum.Enum):
    """Driver response to an assignment."""
    ACCEPT = "ACCEPT"
    DECLINE = "DECLINE"


class TripState(str, enum.Enum):
    """Trip sub-state of a tracking session."""
    ASSIGNED = "ASSIGNED"
    EN_ROUTE_TO_PICKUP = "EN_ROUTE_TO_PICKUP"
    PICKUP_REACHED = "PICKUP_REACHED"
    IN_TRANSIT = "IN_TRANSIT"
    DROP_REACHED = "DROP_REACHED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_TRIP_STATES = (TripState.COMPLETED, TripState.CANCELLED)

TRIP_TRANSITIONS = {
    TripState.ASSIGNED: {TripState.EN_ROUTE_TO_PICKUP, TripState.CANCELLED},
    TripState.EN_ROUTE_TO_PICKUP: {TripState.PICKUP_REACHED, TripState.CANCELLED},
    TripState.PICKUP_REACHED: {TripState.IN_TRANSIT, TripState.CANCELLED},
    TripState.IN_TRANSIT: {TripState.DROP_REACHED, TripState.CANCELLED},
    TripState.DROP_REACHED: {TripState.COMPLETED, TripState.CANCELLED},
    TripState.COMPLETED: set(),
    TripState.CANCELLED: set(),
}


class NotificationPriority(str, enum.Enum):
    """Delivery priority requested from a notification channel."""
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    ALARM = "ALARM"  # Full-screen, sound-looping driver alert
