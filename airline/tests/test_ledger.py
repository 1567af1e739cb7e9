from datetime import date
from decimal import Decimal
import threading
from unittest.mock import patch

from django.db import DatabaseError, OperationalError, connection
from django.test import TestCase, TransactionTestCase, override_settings

from airline import ledger
from airline.exceptions import (
    AuthError,
    CapacityError,
    ConflictError,
    InvalidRequestError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
)
from airline.models import Booking, Flight, Profile

from .helpers import TEST_LEDGER_SETTINGS, BookingFixtures


@override_settings(BOOKING_LEDGER=TEST_LEDGER_SETTINGS)
class ReserveSeatsTests(BookingFixtures, TestCase):
    def setUp(self):
        self.user = self._create_user("traveler")
        self.other = self._create_user("rival")
        self.identity = ledger.identity_for_user(self.user)
        self.other_identity = ledger.identity_for_user(self.other)
        self.flight = self._create_flight()

    def test_reservation_creates_confirmed_booking_and_books_seats(self):
        reservation = ledger.reserve_seats(
            self.identity, self.flight.pk, ["12C", "12D"], self._passengers(2)
        )

        booking = Booking.objects.get(pk=reservation.booking_id)
        self.assertEqual(booking.status, Booking.Status.CONFIRMED)
        self.assertEqual(booking.selected_seats, ["12C", "12D"])
        self.assertEqual(booking.user_id, self.user.id)
        self.assertEqual(booking.total_price, Decimal("5090.00"))
        self.assertEqual(
            [p.seat_assignment for p in booking.passengers.all()], ["12C", "12D"]
        )
        self.flight.refresh_from_db()
        self.assertEqual(self.flight.booked, 2)
        self.assertEqual(self.flight.seats, 118)
        self.assertEqual(self.flight.version, 1)
        self.assertEqual(reservation.reference, booking.reference)
        self.assertLedgerConsistent(self.flight)

    def test_seats_are_normalized(self):
        reservation = ledger.reserve_seats(
            self.identity, self.flight.pk, ["12c", " 3a "], self._passengers(2)
        )
        self.assertEqual(reservation.seats, ["12C", "3A"])

    def test_overlapping_request_reports_conflicting_seats(self):
        ledger.reserve_seats(self.identity, self.flight.pk, ["12C"], self._passengers(1))

        with self.assertRaises(ConflictError) as ctx:
            ledger.reserve_seats(
                self.other_identity, self.flight.pk, ["14A", "12C"], self._passengers(2)
            )

        self.assertEqual(ctx.exception.conflicting_seats, ["12C"])
        self.assertEqual(ctx.exception.to_payload()["conflictingSeats"], ["12C"])
        self.assertEqual(Booking.objects.count(), 1)
        self.assertLedgerConsistent(self.flight)

    def test_cancelled_bookings_do_not_hold_seats(self):
        first = ledger.reserve_seats(self.identity, self.flight.pk, ["12C"], self._passengers(1))
        ledger.cancel_booking(self.identity, first.booking_id)

        second = ledger.reserve_seats(self.other_identity, self.flight.pk, ["12C"], self._passengers(1))

        self.assertEqual(second.seats, ["12C"])
        self.assertLedgerConsistent(self.flight)

    def test_full_flight_rejects_new_seats(self):
        full = self._create_flight(capacity=1, booked=1, flight_number="SL102")

        with self.assertRaises(CapacityError):
            ledger.reserve_seats(self.identity, full.pk, ["1A"], self._passengers(1))

        full.refresh_from_db()
        self.assertEqual(full.booked, 1)
        self.assertFalse(Booking.objects.filter(flight=full).exists())

    def test_full_flight_rejects_seat_outside_the_map(self):
        small = self._create_flight(capacity=1, flight_number="SL103")
        ledger.reserve_seats(self.identity, small.pk, ["1A"], self._passengers(1))

        with self.assertRaises(CapacityError):
            ledger.reserve_seats(self.other_identity, small.pk, ["1B"], self._passengers(1))
        self.assertLedgerConsistent(small)

    def test_seat_outside_seat_map_is_rejected(self):
        small = self._create_flight(capacity=6, flight_number="SL104")

        with self.assertRaises(InvalidRequestError) as ctx:
            ledger.reserve_seats(self.identity, small.pk, ["2A"], self._passengers(1))

        self.assertEqual(ctx.exception.details["invalidSeats"], ["2A"])
        small.refresh_from_db()
        self.assertEqual(small.booked, 0)

    def test_duplicate_seats_are_rejected(self):
        with self.assertRaises(InvalidRequestError):
            ledger.reserve_seats(self.identity, self.flight.pk, ["1A", "1a"], self._passengers(2))

    def test_empty_and_malformed_seats_are_rejected(self):
        for seats in ([], ["ZZ"], ["0A"], ["1Q"], [12]):
            with self.subTest(seats=seats):
                with self.assertRaises(InvalidRequestError):
                    ledger.reserve_seats(self.identity, self.flight.pk, seats, self._passengers(1))
        self.assertFalse(Booking.objects.exists())

    def test_passenger_count_must_match_seat_count(self):
        with self.assertRaises(InvalidRequestError):
            ledger.reserve_seats(self.identity, self.flight.pk, ["1A", "1B"], self._passengers(1))

        self.flight.refresh_from_db()
        self.assertEqual(self.flight.booked, 0)
        self.assertFalse(Booking.objects.exists())

    def test_passenger_needs_valid_email(self):
        passengers = [{"name": "Ana Cruz", "email": "not-an-email"}]
        with self.assertRaises(InvalidRequestError):
            ledger.reserve_seats(self.identity, self.flight.pk, ["1A"], passengers)

    def test_explicit_seat_assignments_are_kept(self):
        passengers = self._passengers(2)
        passengers[0]["seatAssignment"] = "1b"

        reservation = ledger.reserve_seats(self.identity, self.flight.pk, ["1A", "1B"], passengers)

        booking = Booking.objects.get(pk=reservation.booking_id)
        self.assertEqual(
            [(p.name, p.seat_assignment) for p in booking.passengers.all()],
            [("Passenger 1", "1B"), ("Passenger 2", "1A")],
        )

    def test_seat_assignment_outside_selection_is_rejected(self):
        passengers = self._passengers(1)
        passengers[0]["seatAssignment"] = "4F"
        with self.assertRaises(InvalidRequestError):
            ledger.reserve_seats(self.identity, self.flight.pk, ["1A"], passengers)

    def test_passenger_details_records_are_accepted(self):
        passengers = [ledger.PassengerDetails(name="Ana Cruz", email="ana@example.com")]
        reservation = ledger.reserve_seats(self.identity, self.flight.pk, ["5C"], passengers)
        self.assertEqual(Booking.objects.get(pk=reservation.booking_id).passengers.get().name, "Ana Cruz")

    def test_missing_flight_is_not_found(self):
        with self.assertRaises(NotFoundError):
            ledger.reserve_seats(self.identity, 999999, ["1A"], self._passengers(1))

    def test_anonymous_caller_is_rejected(self):
        with self.assertRaises(AuthError):
            ledger.reserve_seats(None, self.flight.pk, ["1A"], self._passengers(1))

    def test_users_cannot_book_for_someone_else(self):
        with self.assertRaises(PermissionDeniedError):
            ledger.reserve_seats(
                self.identity, self.flight.pk, ["1A"], self._passengers(1), user_id=self.other.pk
            )

    def test_admin_can_book_on_behalf_of_a_user(self):
        admin = ledger.identity_for_user(self._create_user("ops", is_staff=True))
        reservation = ledger.reserve_seats(
            admin, self.flight.pk, ["1A"], self._passengers(1), user_id=self.user.pk
        )
        self.assertEqual(Booking.objects.get(pk=reservation.booking_id).user_id, self.user.pk)

    def test_client_booking_reference_is_kept_when_unused(self):
        first = ledger.reserve_seats(
            self.identity, self.flight.pk, ["1A"], self._passengers(1), booking_ref="bk-1700000000"
        )
        second = ledger.reserve_seats(
            self.identity, self.flight.pk, ["1B"], self._passengers(1), booking_ref="BK-1700000000"
        )

        self.assertEqual(first.reference, "BK-1700000000")
        self.assertNotEqual(second.reference, first.reference)

    def test_reference_taken_between_check_and_insert_falls_back_to_generated(self):
        ledger.reserve_seats(
            self.identity, self.flight.pk, ["1A"], self._passengers(1), booking_ref="BK-2024"
        )
        other_flight = self._create_flight(flight_number="SL500")

        with patch("airline.ledger._reference_available", return_value=True):
            reservation = ledger.reserve_seats(
                self.other_identity, other_flight.pk, ["1A"], self._passengers(1), booking_ref="BK-2024"
            )

        self.assertNotEqual(reservation.reference, "BK-2024")
        self.assertEqual(Booking.objects.get(pk=reservation.booking_id).reference, reservation.reference)
        self.assertEqual(Booking.objects.get(pk=reservation.booking_id).passengers.count(), 1)
        self.assertLedgerConsistent(other_flight)

    def test_booking_for_user_id_is_validated(self):
        admin = ledger.identity_for_user(self._create_user("ops", is_staff=True))

        for user_id in ("abc", "1.5", -3, True):
            with self.subTest(user_id=user_id):
                with self.assertRaises(InvalidRequestError):
                    ledger.reserve_seats(admin, self.flight.pk, ["1A"], self._passengers(1), user_id=user_id)
        with self.assertRaises(NotFoundError):
            ledger.reserve_seats(admin, self.flight.pk, ["1A"], self._passengers(1), user_id=999999)

        self.assertFalse(Booking.objects.exists())
        self.assertLedgerConsistent(self.flight)

    def test_user_may_name_themselves_as_owner(self):
        reservation = ledger.reserve_seats(
            self.identity, self.flight.pk, ["1A"], self._passengers(1), user_id=str(self.user.pk)
        )
        self.assertEqual(Booking.objects.get(pk=reservation.booking_id).user_id, self.user.pk)

    def test_malformed_booking_reference_is_rejected(self):
        with self.assertRaises(InvalidRequestError):
            ledger.reserve_seats(
                self.identity, self.flight.pk, ["1A"], self._passengers(1), booking_ref="bad ref!"
            )

    def test_stale_read_is_retried_and_sees_the_winning_booking(self):
        stale_flight = Flight.objects.get(pk=self.flight.pk)
        ledger.reserve_seats(self.other_identity, self.flight.pk, ["12C"], self._passengers(1))

        real_load = ledger._load_flight
        real_reserved = ledger._reserved_seats
        calls = {"load": 0, "reserved": 0}

        def load(flight_id):
            calls["load"] += 1
            return stale_flight if calls["load"] == 1 else real_load(flight_id)

        def reserved(flight):
            calls["reserved"] += 1
            return set() if calls["reserved"] == 1 else real_reserved(flight)

        with patch("airline.ledger._load_flight", side_effect=load), patch(
            "airline.ledger._reserved_seats", side_effect=reserved
        ):
            with self.assertRaises(ConflictError) as ctx:
                ledger.reserve_seats(self.identity, self.flight.pk, ["12C"], self._passengers(1))

        self.assertEqual(ctx.exception.conflicting_seats, ["12C"])
        self.assertEqual(calls["load"], 2)
        self.assertEqual(Booking.objects.count(), 1)
        self.assertLedgerConsistent(self.flight)

    def test_transient_storage_errors_are_retried_then_reported(self):
        with patch(
            "airline.ledger._reserved_seats", side_effect=OperationalError("database is locked")
        ) as reserved:
            with self.assertRaises(StorageError) as ctx:
                ledger.reserve_seats(self.identity, self.flight.pk, ["1A"], self._passengers(1))

        self.assertEqual(reserved.call_count, 3)
        self.assertNotIn("locked", ctx.exception.message)
        self.assertFalse(Booking.objects.exists())
        self.assertLedgerConsistent(self.flight)

    def test_other_storage_errors_are_not_retried(self):
        with patch("airline.ledger._reserved_seats", side_effect=DatabaseError("boom")) as reserved:
            with self.assertRaises(StorageError):
                ledger.reserve_seats(self.identity, self.flight.pk, ["1A"], self._passengers(1))
        self.assertEqual(reserved.call_count, 1)

    def test_conflicts_are_not_retried(self):
        ledger.reserve_seats(self.identity, self.flight.pk, ["1A"], self._passengers(1))

        with patch("airline.ledger._reserved_seats", wraps=ledger._reserved_seats) as reserved:
            with self.assertRaises(ConflictError):
                ledger.reserve_seats(self.other_identity, self.flight.pk, ["1A"], self._passengers(1))
        self.assertEqual(reserved.call_count, 1)


@override_settings(BOOKING_LEDGER=TEST_LEDGER_SETTINGS)
class BookingStatusTests(BookingFixtures, TestCase):
    def setUp(self):
        self.user = self._create_user("traveler")
        self.other = self._create_user("rival")
        self.identity = ledger.identity_for_user(self.user)
        self.admin = ledger.identity_for_user(self._create_user("ops", is_staff=True))
        self.flight = self._create_flight()
        self.reservation = ledger.reserve_seats(
            self.identity, self.flight.pk, ["3A", "3B"], self._passengers(2)
        )
        self.booking_id = self.reservation.booking_id

    def _status(self):
        return Booking.objects.get(pk=self.booking_id).status

    def _booked(self):
        self.flight.refresh_from_db()
        return self.flight.booked

    def test_cancel_frees_seats(self):
        booking = ledger.cancel_booking(self.identity, self.booking_id)

        self.assertEqual(booking.status, Booking.Status.CANCELLED)
        self.assertEqual(self._booked(), 0)
        self.assertEqual(ledger.reserved_seats(self.flight.pk), [])
        self.assertLedgerConsistent(self.flight)

    def test_cancel_twice_is_a_no_op(self):
        ledger.cancel_booking(self.identity, self.booking_id)
        ledger.cancel_booking(self.identity, self.booking_id)

        self.assertEqual(self._status(), Booking.Status.CANCELLED)
        self.assertEqual(self._booked(), 0)
        self.assertLedgerConsistent(self.flight)

    def test_only_owner_or_admin_can_cancel(self):
        with self.assertRaises(PermissionDeniedError):
            ledger.cancel_booking(ledger.identity_for_user(self.other), self.booking_id)
        self.assertEqual(self._status(), Booking.Status.CONFIRMED)

        ledger.cancel_booking(self.admin, self.booking_id)
        self.assertEqual(self._status(), Booking.Status.CANCELLED)

    def test_counter_drift_is_logged_as_error(self):
        Flight.objects.filter(pk=self.flight.pk).update(booked=1)

        with self.assertLogs("airline.ledger", level="ERROR") as logs:
            ledger.cancel_booking(self.identity, self.booking_id)

        self.assertIn("drifted", logs.output[0])
        self.assertEqual(self._booked(), 0)
        self.assertEqual(self._status(), Booking.Status.CANCELLED)

    def test_cancel_missing_booking_is_not_found(self):
        with self.assertRaises(NotFoundError):
            ledger.cancel_booking(self.identity, 999999)

    def test_cancelled_booking_cannot_be_confirmed_again(self):
        ledger.cancel_booking(self.identity, self.booking_id)

        with self.assertRaises(InvalidTransitionError):
            ledger.set_booking_status(self.admin, self.booking_id, "confirmed")

        self.assertEqual(self._status(), Booking.Status.CANCELLED)
        self.assertEqual(self._booked(), 0)

    def test_pending_to_confirmed_keeps_seats_held(self):
        Booking.objects.filter(pk=self.booking_id).update(status=Booking.Status.PENDING)

        ledger.set_booking_status(self.admin, self.booking_id, "confirmed")

        self.assertEqual(self._status(), Booking.Status.CONFIRMED)
        self.assertEqual(self._booked(), 2)

    def test_pending_booking_can_be_cancelled(self):
        Booking.objects.filter(pk=self.booking_id).update(status=Booking.Status.PENDING)

        ledger.set_booking_status(self.admin, self.booking_id, "cancelled")

        self.assertEqual(self._booked(), 0)
        self.assertLedgerConsistent(self.flight)

    def test_completed_is_terminal_and_keeps_seats(self):
        ledger.set_booking_status(self.admin, self.booking_id, "completed")
        self.assertEqual(self._booked(), 2)

        for status in ("confirmed", "cancelled", "pending"):
            with self.subTest(status=status):
                with self.assertRaises(InvalidTransitionError):
                    ledger.set_booking_status(self.admin, self.booking_id, status)
        with self.assertRaises(InvalidTransitionError):
            ledger.cancel_booking(self.identity, self.booking_id)

        self.assertEqual(self._status(), Booking.Status.COMPLETED)
        self.assertLedgerConsistent(self.flight)

    def test_confirmed_cannot_go_back_to_pending(self):
        with self.assertRaises(InvalidTransitionError):
            ledger.set_booking_status(self.admin, self.booking_id, "pending")

    def test_setting_the_current_status_is_a_no_op(self):
        version = Flight.objects.get(pk=self.flight.pk).version

        ledger.set_booking_status(self.admin, self.booking_id, "confirmed")

        self.assertEqual(self._booked(), 2)
        self.assertEqual(Flight.objects.get(pk=self.flight.pk).version, version + 1)

    def test_status_changes_need_an_admin(self):
        with self.assertRaises(PermissionDeniedError):
            ledger.set_booking_status(self.identity, self.booking_id, "cancelled")
        with self.assertRaises(AuthError):
            ledger.set_booking_status(None, self.booking_id, "cancelled")

    def test_unknown_status_is_rejected(self):
        with self.assertRaises(InvalidRequestError):
            ledger.set_booking_status(self.admin, self.booking_id, "boarding")

    def test_delete_booking_releases_its_seats(self):
        ledger.delete_booking(self.admin, self.booking_id)

        self.assertFalse(Booking.objects.filter(pk=self.booking_id).exists())
        self.assertEqual(self._booked(), 0)

    def test_delete_cancelled_booking_leaves_counter_alone(self):
        ledger.cancel_booking(self.identity, self.booking_id)
        ledger.reserve_seats(self.identity, self.flight.pk, ["3A"], self._passengers(1))

        ledger.delete_booking(self.admin, self.booking_id)

        self.assertEqual(self._booked(), 1)
        self.assertLedgerConsistent(self.flight)

    def test_complete_departed_bookings(self):
        departed = self._create_flight(flight_number="SL900", date=date(2020, 1, 10))
        done = ledger.reserve_seats(self.identity, departed.pk, ["1A"], self._passengers(1))
        waiting = ledger.reserve_seats(self.identity, departed.pk, ["1B"], self._passengers(1))
        Booking.objects.filter(pk=waiting.booking_id).update(status=Booking.Status.PENDING)

        completed = ledger.complete_departed_bookings(today=date(2030, 1, 1))

        self.assertEqual(completed, 1)
        self.assertEqual(Booking.objects.get(pk=done.booking_id).status, Booking.Status.COMPLETED)
        self.assertEqual(Booking.objects.get(pk=waiting.booking_id).status, Booking.Status.PENDING)
        # Flight dated 2030-05-01 has not departed yet
        self.assertEqual(self._status(), Booking.Status.CONFIRMED)
        self.assertLedgerConsistent(departed)


@override_settings(BOOKING_LEDGER=TEST_LEDGER_SETTINGS)
class FlightAdministrationTests(BookingFixtures, TestCase):
    def setUp(self):
        self.user = self._create_user("traveler")
        self.identity = ledger.identity_for_user(self.user)
        self.admin = ledger.identity_for_user(self._create_user("ops", is_staff=True))
        self.flight = self._create_flight(capacity=8)

    def test_available_seats_exclude_reserved_ones(self):
        ledger.reserve_seats(self.identity, self.flight.pk, ["2B", "1A"], self._passengers(2))

        self.assertEqual(ledger.reserved_seats(self.flight.pk), ["1A", "2B"])
        self.assertEqual(
            ledger.available_seats(self.flight.pk),
            ["1B", "1C", "1D", "1E", "1F", "2A"],
        )

    def test_seat_reads_on_missing_flight(self):
        with self.assertRaises(NotFoundError):
            ledger.available_seats(999999)
        with self.assertRaises(NotFoundError):
            ledger.reserved_seats(999999)

    def test_capacity_cannot_drop_below_booked(self):
        ledger.reserve_seats(self.identity, self.flight.pk, ["1A", "1B", "1C"], self._passengers(3))

        with self.assertRaises(InvalidRequestError):
            ledger.update_flight(self.admin, self.flight.pk, capacity=2)

        flight = ledger.update_flight(self.admin, self.flight.pk, capacity=3, price=Decimal("1999.00"))
        self.assertEqual(flight.capacity, 3)
        self.assertEqual(flight.seats, 0)
        self.assertLedgerConsistent(flight)

    def test_update_ignores_counter_fields(self):
        ledger.update_flight(self.admin, self.flight.pk, booked=5, version=40, stops="1 stop")

        self.flight.refresh_from_db()
        self.assertEqual(self.flight.booked, 0)
        self.assertEqual(self.flight.stops, "1 stop")

    def test_flight_with_active_bookings_cannot_be_deleted(self):
        reservation = ledger.reserve_seats(self.identity, self.flight.pk, ["1A"], self._passengers(1))

        with self.assertRaises(InvalidRequestError):
            ledger.delete_flight(self.admin, self.flight.pk)

        ledger.cancel_booking(self.identity, reservation.booking_id)
        ledger.delete_flight(self.admin, self.flight.pk)
        self.assertFalse(Flight.objects.filter(pk=self.flight.pk).exists())

    def test_flight_changes_need_an_admin(self):
        with self.assertRaises(PermissionDeniedError):
            ledger.update_flight(self.identity, self.flight.pk, capacity=10)
        with self.assertRaises(PermissionDeniedError):
            ledger.delete_flight(self.identity, self.flight.pk)
        with self.assertRaises(PermissionDeniedError):
            ledger.create_flight(self.identity, airline="X")

    def test_profile_role_grants_admin_identity(self):
        Profile.objects.create(user=self.user, role=Profile.Role.ADMIN)
        self.user.refresh_from_db()

        self.assertTrue(ledger.identity_for_user(self.user).is_admin)


# SQLite lock losers retry with back-off
@override_settings(BOOKING_LEDGER={**TEST_LEDGER_SETTINGS, "MAX_ATTEMPTS": 10, "RETRY_DELAY": 0.05})
class ConcurrentReservationTests(BookingFixtures, TransactionTestCase):
    def _race(self, flight, seat, identities):
        barrier = threading.Barrier(len(identities))
        outcomes = []

        def attempt(identity):
            try:
                barrier.wait()
                ledger.reserve_seats(identity, flight.pk, [seat], self._passengers(1))
                outcomes.append("ok")
            except ConflictError as exc:
                outcomes.append(exc.conflicting_seats)
            except StorageError as exc:
                outcomes.append(exc.code)
            finally:
                connection.close()

        threads = [threading.Thread(target=attempt, args=(identity,)) for identity in identities]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return outcomes

    def test_only_one_of_two_simultaneous_requests_wins(self):
        flight = self._create_flight()
        identities = [
            ledger.identity_for_user(self._create_user("first")),
            ledger.identity_for_user(self._create_user("second")),
        ]

        for seat in ("12C", "12D", "12E"):
            with self.subTest(seat=seat):
                self.assertCountEqual(self._race(flight, seat, identities), ["ok", [seat]])
                self.assertLedgerConsistent(flight)

        self.assertEqual(flight.booked, 3)
