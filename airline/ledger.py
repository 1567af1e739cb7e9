"""Seat inventory and booking consistency.

Every write that touches a flight's ``booked`` counter, or the set of bookings
holding seats on it, runs inside ``_flight_unit``: one transaction that locks
the flight row and ends with a compare-and-set on ``Flight.version``. A stale
version or a transient database error rolls the unit back and retries it; other
flights are never locked.
"""

import logging
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import validate_email
from django.contrib.auth.models import User
from django.db import DatabaseError, IntegrityError, OperationalError, transaction
from django.db.models import F
from django.utils import timezone

from .exceptions import (
    AuthError,
    CapacityError,
    ConflictError,
    InvalidRequestError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
)
from .models import Booking, Flight, Passenger, Profile
from .seatmap import normalize_seats, seat_space, sort_seats

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY = 0.05
DEFAULT_TAX_PER_SEAT = "45.00"
BOOKING_REF_PATTERN = re.compile(r"^[A-Z0-9-]{4,20}$")

TRANSITIONS = {
    Booking.Status.PENDING: {Booking.Status.CONFIRMED, Booking.Status.CANCELLED},
    Booking.Status.CONFIRMED: {Booking.Status.COMPLETED, Booking.Status.CANCELLED},
    Booking.Status.CANCELLED: set(),
    Booking.Status.COMPLETED: set(),
}


@dataclass(frozen=True)
class Identity:
    """The authenticated caller of a ledger operation."""

    user_id: int
    role: str = Profile.Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Profile.Role.ADMIN

    def can_act_for(self, user_id) -> bool:
        if self.is_admin:
            return True
        try:
            return user_id is not None and int(user_id) == self.user_id
        except (TypeError, ValueError):
            return False


@dataclass
class PassengerDetails:
    name: str
    email: str
    phone: str = ""
    seat_assignment: Optional[str] = None


@dataclass(frozen=True)
class Reservation:
    booking_id: int
    reference: str
    flight_id: int
    seats: List[str]
    total_price: Decimal
    status: str

    def to_dict(self):
        return {
            "bookingId": self.booking_id,
            "bookingRef": self.reference,
            "flightId": self.flight_id,
            "selectedSeats": list(self.seats),
            "totalPrice": self.total_price,
            "status": self.status,
        }


class _StaleFlight(Exception):
    """The flight changed between the unit's read and its counter write."""


def identity_for_user(user):
    """Build the caller identity for a Django user; None when anonymous."""
    if user is None or not user.is_authenticated:
        return None
    profile = getattr(user, "profile", None)
    if user.is_staff or (profile is not None and profile.role == Profile.Role.ADMIN):
        return Identity(user_id=user.pk, role=Profile.Role.ADMIN)
    return Identity(user_id=user.pk, role=Profile.Role.USER)


def _require_identity(identity):
    if identity is None:
        raise AuthError()


def _require_admin(identity):
    _require_identity(identity)
    if not identity.is_admin:
        raise PermissionDeniedError("Only administrators can do this.")


def _ledger_setting(name, default):
    return getattr(settings, "BOOKING_LEDGER", {}).get(name, default)


def tax_per_seat():
    return Decimal(str(_ledger_setting("TAX_PER_SEAT", DEFAULT_TAX_PER_SEAT)))


@contextmanager
def _storage_errors(action):
    try:
        yield
    except DatabaseError as exc:
        logger.error("%s failed: %s", action, exc)
        raise StorageError() from exc


def _load_flight(flight_id):
    try:
        return Flight.objects.select_for_update().get(pk=flight_id)
    except (Flight.DoesNotExist, ValueError, TypeError):
        raise NotFoundError("Flight not found.")


def _load_booking(booking_id, lock=False):
    queryset = Booking.objects.select_for_update() if lock else Booking.objects.all()
    try:
        return queryset.get(pk=booking_id)
    except (Booking.DoesNotExist, ValueError, TypeError):
        raise NotFoundError("Booking not found.")


def _reserved_seats(flight):
    reserved = set()
    holding = Booking.objects.filter(flight=flight, status__in=Booking.SEAT_HOLDING)
    for seats in holding.values_list("selected_seats", flat=True):
        reserved.update(seats or [])
    return reserved


def _commit_counter(flight, delta):
    """Apply `delta` to the booked counter if nobody moved the flight since it was read."""
    if flight.booked + delta < 0:
        logger.error(
            "Flight %s counter drifted: booked=%s cannot release %s seat(s); clamping to zero",
            flight.pk,
            flight.booked,
            delta,
        )
        delta = -flight.booked

    updated = Flight.objects.filter(pk=flight.pk, version=flight.version).update(
        booked=F("booked") + delta,
        version=F("version") + 1,
        updated_at=timezone.now(),
    )
    if updated != 1:
        raise _StaleFlight(flight.pk)
    flight.booked += delta
    flight.version += 1


def _flight_unit(flight_id, operation, action):
    max_attempts = max(int(_ledger_setting("MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS)), 1)
    retry_delay = float(_ledger_setting("RETRY_DELAY", DEFAULT_RETRY_DELAY))

    for attempt in range(1, max_attempts + 1):
        try:
            with transaction.atomic():
                flight = _load_flight(flight_id)
                return operation(flight)
        except _StaleFlight:
            logger.warning(
                "%s: flight %s changed concurrently (attempt %s/%s)",
                action,
                flight_id,
                attempt,
                max_attempts,
            )
        except OperationalError as exc:
            logger.warning(
                "%s: transient storage error on flight %s (attempt %s/%s): %s",
                action,
                flight_id,
                attempt,
                max_attempts,
                exc,
            )
        except DatabaseError as exc:
            logger.error("%s: storage error on flight %s: %s", action, flight_id, exc)
            raise StorageError() from exc
        if attempt < max_attempts:
            time.sleep(retry_delay * attempt)

    logger.error("%s: giving up on flight %s after %s attempts", action, flight_id, max_attempts)
    raise StorageError()


def _passenger_details(passengers, seats):
    if not isinstance(passengers, (list, tuple)) or not passengers:
        raise InvalidRequestError("Add at least one passenger.")
    if len(passengers) != len(seats):
        raise InvalidRequestError(
            f"{len(passengers)} passenger(s) for {len(seats)} seat(s); "
            "each passenger needs exactly one seat."
        )

    details = []
    for index, passenger in enumerate(passengers, start=1):
        if isinstance(passenger, dict):
            passenger = PassengerDetails(
                name=passenger.get("name") or "",
                email=passenger.get("email") or "",
                phone=passenger.get("phone") or "",
                seat_assignment=passenger.get("seatAssignment") or passenger.get("seat_assignment"),
            )
        if not isinstance(passenger, PassengerDetails):
            raise InvalidRequestError(f"Passenger {index} is malformed.")

        name = str(passenger.name).strip()
        email = str(passenger.email).strip()
        if not name:
            raise InvalidRequestError(f"Passenger {index} needs a name.")
        try:
            validate_email(email)
        except ValidationError:
            raise InvalidRequestError(f"Passenger {index} needs a valid email.")

        seat = passenger.seat_assignment
        if seat:
            seat = str(seat).strip().upper()
            if seat not in seats:
                raise InvalidRequestError(f"Passenger {index} is assigned seat {seat} outside the selection.")
        details.append(
            PassengerDetails(
                name=name,
                email=email,
                phone=str(passenger.phone or "").strip(),
                seat_assignment=seat or None,
            )
        )

    assigned = [p.seat_assignment for p in details if p.seat_assignment]
    if len(assigned) != len(set(assigned)):
        raise InvalidRequestError("Two passengers are assigned the same seat.")

    # Unassigned passengers take the remaining seats in selection order
    free = iter(seat for seat in seats if seat not in assigned)
    for passenger in details:
        if not passenger.seat_assignment:
            passenger.seat_assignment = next(free)
    return details


def _clean_reference(booking_ref):
    if booking_ref in (None, ""):
        return ""
    reference = str(booking_ref).strip().upper()
    if not BOOKING_REF_PATTERN.match(reference):
        raise InvalidRequestError("Booking reference must be 4-20 letters, digits or dashes.")
    return reference


def parse_user_id(value):
    """Coerce a client-supplied user id to an int; InvalidRequestError otherwise."""
    if isinstance(value, bool):
        raise InvalidRequestError("userId must be a number.")
    try:
        user_id = int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidRequestError("userId must be a number.")
    if user_id < 1:
        raise InvalidRequestError("userId must be a number.")
    return user_id


def _reference_available(reference):
    return not Booking.objects.filter(reference=reference).exists()


def _save_booking(booking, reference):
    """Insert the booking, falling back to a generated reference if `reference` is taken."""
    if not reference:
        booking.save()
        return
    if _reference_available(reference):
        booking.reference = reference
        try:
            with transaction.atomic():
                booking.save()
            return
        except IntegrityError:
            logger.info("Booking reference %s was taken concurrently; generating one", reference)
            booking.reference = ""
    booking.save()


def reserve_seats(identity, flight_id, requested_seats, passengers, booking_ref=None, user_id=None):
    """Book `requested_seats` on a flight for the caller (or, for admins, `user_id`).

    Raises NotFoundError, InvalidRequestError, ConflictError (with the
    conflicting seats), CapacityError or StorageError; nothing is written
    unless the whole reservation succeeds.
    """
    _require_identity(identity)
    owner_id = identity.user_id
    if user_id not in (None, ""):
        owner_id = parse_user_id(user_id)
        if not identity.can_act_for(owner_id):
            raise PermissionDeniedError("You can only book for your own account.")
        if owner_id != identity.user_id:
            with _storage_errors("Booking owner lookup"):
                owner_exists = User.objects.filter(pk=owner_id).exists()
            if not owner_exists:
                raise NotFoundError("User not found")

    seats = normalize_seats(requested_seats)
    details = _passenger_details(passengers, seats)
    reference = _clean_reference(booking_ref)

    def operation(flight):
        conflicting = sort_seats(set(seats) & _reserved_seats(flight))
        if conflicting:
            logger.info("Seat conflict on flight %s: %s", flight.pk, ", ".join(conflicting))
            raise ConflictError(conflicting)
        if flight.booked + len(seats) > flight.capacity:
            logger.info(
                "Flight %s full: booked=%s capacity=%s requested=%s",
                flight.pk,
                flight.booked,
                flight.capacity,
                len(seats),
            )
            raise CapacityError(f"Only {max(flight.seats, 0)} seat(s) left on flight {flight.flight_number}.")
        space = set(seat_space(flight.capacity))
        missing = [seat for seat in seats if seat not in space]
        if missing:
            raise InvalidRequestError(
                f"Seat(s) {', '.join(missing)} do not exist on this flight.",
                invalidSeats=missing,
            )

        _commit_counter(flight, len(seats))

        booking = Booking(
            flight=flight,
            user_id=owner_id,
            selected_seats=seats,
            total_price=(flight.price + tax_per_seat()) * len(seats),
            status=Booking.Status.CONFIRMED,
        )
        _save_booking(booking, reference)
        Passenger.objects.bulk_create(
            [
                Passenger(
                    booking=booking,
                    position=position,
                    name=passenger.name,
                    email=passenger.email,
                    phone=passenger.phone,
                    seat_assignment=passenger.seat_assignment,
                )
                for position, passenger in enumerate(details)
            ]
        )
        return Reservation(
            booking_id=booking.pk,
            reference=booking.reference,
            flight_id=flight.pk,
            seats=seats,
            total_price=booking.total_price,
            status=booking.status,
        )

    reservation = _flight_unit(flight_id, operation, "reserve_seats")
    logger.info(
        "Booking %s reserved seats %s on flight %s for user %s",
        reservation.reference,
        ", ".join(reservation.seats),
        reservation.flight_id,
        owner_id,
    )
    return reservation


def _booking_flight_id(booking_id):
    with _storage_errors("Booking lookup"):
        booking = _load_booking(booking_id)
    return booking.flight_id


def _change_status(booking_id, new_status, action, check=None):
    flight_id = _booking_flight_id(booking_id)

    def operation(flight):
        booking = _load_booking(booking_id, lock=True)
        if check is not None:
            check(booking)
        if booking.status == new_status:
            # Unit still bumps the version so it serializes with reservations
            _commit_counter(flight, 0)
            return booking, False
        if new_status not in TRANSITIONS[booking.status]:
            raise InvalidTransitionError(
                f"Booking {booking.reference} cannot move from {booking.status} to {new_status}."
            )
        delta = 0
        if booking.holds_seats and new_status not in Booking.SEAT_HOLDING:
            delta = -booking.seat_count
        _commit_counter(flight, delta)
        booking.status = new_status
        booking.save(update_fields=["status", "updated_at"])
        return booking, True

    booking, changed = _flight_unit(flight_id, operation, action)
    if changed:
        logger.info("Booking %s is now %s", booking.reference, booking.status)
    return booking


def cancel_booking(identity, booking_id):
    """Cancel a booking and free its seats; cancelling twice is a no-op."""
    _require_identity(identity)

    def check(booking):
        if not identity.can_act_for(booking.user_id):
            raise PermissionDeniedError("You can only cancel your own bookings.")

    return _change_status(booking_id, Booking.Status.CANCELLED, "cancel_booking", check)


def set_booking_status(identity, booking_id, new_status):
    _require_admin(identity)
    if new_status not in Booking.Status.values:
        raise InvalidRequestError(f"Unknown booking status {new_status!r}.")
    return _change_status(booking_id, Booking.Status(new_status), "set_booking_status")


def delete_booking(identity, booking_id):
    """Remove a booking outright, releasing its seats if it still held any."""
    _require_admin(identity)
    flight_id = _booking_flight_id(booking_id)

    def operation(flight):
        booking = _load_booking(booking_id, lock=True)
        _commit_counter(flight, -booking.seat_count if booking.holds_seats else 0)
        reference = booking.reference
        booking.delete()
        return reference

    reference = _flight_unit(flight_id, operation, "delete_booking")
    logger.info("Booking %s deleted", reference)


def reserved_seats(flight_id):
    with _storage_errors("Reserved seat lookup"):
        try:
            flight = Flight.objects.get(pk=flight_id)
        except (Flight.DoesNotExist, ValueError, TypeError):
            raise NotFoundError("Flight not found.")
        return sort_seats(_reserved_seats(flight))


def available_seats(flight_id):
    with _storage_errors("Available seat lookup"):
        try:
            flight = Flight.objects.get(pk=flight_id)
        except (Flight.DoesNotExist, ValueError, TypeError):
            raise NotFoundError("Flight not found.")
        reserved = _reserved_seats(flight)
    return [seat for seat in seat_space(flight.capacity) if seat not in reserved]


def create_flight(identity, **fields):
    _require_admin(identity)
    with _storage_errors("Flight creation"):
        flight = Flight.objects.create(**fields)
    logger.info("Flight %s created (%s)", flight.pk, flight)
    return flight


def update_flight(identity, flight_id, **changes):
    """Apply admin edits; capacity may not drop below the seats already booked."""
    _require_admin(identity)
    changes.pop("booked", None)
    changes.pop("version", None)

    def operation(flight):
        capacity = changes.get("capacity", flight.capacity)
        if capacity < flight.booked:
            raise InvalidRequestError(
                f"Capacity {capacity} is below the {flight.booked} seat(s) already booked.",
                booked=flight.booked,
            )
        _commit_counter(flight, 0)
        for name, value in changes.items():
            setattr(flight, name, value)
        flight.save(update_fields=list(changes) + ["updated_at"])
        return flight

    flight = _flight_unit(flight_id, operation, "update_flight")
    logger.info("Flight %s updated: %s", flight.pk, ", ".join(sorted(changes)) or "no fields")
    return flight


def delete_flight(identity, flight_id):
    _require_admin(identity)

    def operation(flight):
        active = flight.bookings.filter(status__in=Booking.ACTIVE).count()
        if active:
            raise InvalidRequestError(
                f"Flight has {active} active booking(s); cancel them first.",
                activeBookings=active,
            )
        _commit_counter(flight, 0)
        flight.delete()

    _flight_unit(flight_id, operation, "delete_flight")
    logger.info("Flight %s deleted", flight_id)


def complete_departed_bookings(today=None):
    """Mark confirmed bookings on flights dated before `today` as completed.

    Returns the number of bookings completed.
    """
    if today is None:
        today = timezone.localdate()

    with _storage_errors("Departed flight lookup"):
        flight_ids = list(
            Flight.objects.filter(
                date__lt=today, bookings__status=Booking.Status.CONFIRMED
            )
            .values_list("pk", flat=True)
            .distinct()
        )

    completed = 0
    for flight_id in flight_ids:

        def operation(flight):
            _commit_counter(flight, 0)
            return flight.bookings.filter(status=Booking.Status.CONFIRMED).update(
                status=Booking.Status.COMPLETED, updated_at=timezone.now()
            )

        count = _flight_unit(flight_id, operation, "complete_departed_bookings")
        logger.info("Completed %s booking(s) on departed flight %s", count, flight_id)
        completed += count
    return completed
