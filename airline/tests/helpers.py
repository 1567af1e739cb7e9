from datetime import date
from decimal import Decimal

from django.contrib.auth.models import User

from airline.models import Booking, Flight

TEST_LEDGER_SETTINGS = {"MAX_ATTEMPTS": 3, "RETRY_DELAY": 0, "TAX_PER_SEAT": "45.00"}


class BookingFixtures:
    """Factories shared by the ledger and API tests."""

    def _create_user(self, username="traveler", is_staff=False, password="SafePass123!"):
        return User.objects.create_user(
            username=username,
            email=f"{username}@example.com",
            password=password,
            is_staff=is_staff,
        )

    def _create_flight(self, capacity=120, booked=0, **extra):
        fields = {
            "airline": "SkyLedger Air",
            "flight_number": "SL101",
            "origin": "Manila",
            "destination": "Cebu",
            "date": date(2030, 5, 1),
            "departure": "08:00",
            "arrival": "09:20",
            "duration": "1h 20m",
            "price": Decimal("2500.00"),
            "capacity": capacity,
            "booked": booked,
        }
        fields.update(extra)
        return Flight.objects.create(**fields)

    def _passengers(self, count):
        return [
            {"name": f"Passenger {index}", "email": f"passenger{index}@example.com", "phone": "+639170000000"}
            for index in range(1, count + 1)
        ]

    def assertLedgerConsistent(self, flight):
        flight.refresh_from_db()
        held = []
        for booking in Booking.objects.filter(flight=flight).exclude(status=Booking.Status.CANCELLED):
            held.extend(booking.selected_seats)
        self.assertEqual(len(held), len(set(held)), "a seat is held by two bookings")
        self.assertEqual(flight.booked, len(held))
        self.assertLessEqual(flight.booked, flight.capacity)
