from django.db import models
from django.contrib.auth.models import User
import secrets
import string


class Flight(models.Model):
    # Example: SL204
    airline = models.CharField(max_length=80)
    flight_number = models.CharField(max_length=10)
    origin = models.CharField(max_length=120)
    destination = models.CharField(max_length=120)
    date = models.DateField()
    # Local time-of-day strings, e.g. "08:45"
    departure = models.CharField(max_length=10)
    arrival = models.CharField(max_length=10)
    duration = models.CharField(max_length=20, blank=True)
    stops = models.CharField(max_length=40, blank=True, default="Non-stop")
    price = models.DecimalField(max_digits=10, decimal_places=2)
    capacity = models.PositiveIntegerField()
    booked = models.PositiveIntegerField(default=0, editable=False)
    # Bumped by every ledger unit touching this flight
    version = models.PositiveIntegerField(default=0, editable=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("date", "departure")
        constraints = [
            models.CheckConstraint(
                condition=models.Q(booked__lte=models.F("capacity")),
                name="flight_booked_within_capacity",
            ),
            models.CheckConstraint(
                condition=models.Q(capacity__gt=0),
                name="flight_capacity_positive",
            ),
        ]

    @property
    def seats(self):
        return self.capacity - self.booked

    def __str__(self):
        return f"{self.flight_number} {self.origin} -> {self.destination} ({self.date})"


class Profile(models.Model):
    class Role(models.TextChoices):
        USER = "user", "User"
        ADMIN = "admin", "Admin"

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name="profile")
    display_name = models.CharField(max_length=150, blank=True)
    phone = models.CharField(max_length=24, blank=True)
    passport = models.CharField(max_length=20, blank=True)
    role = models.CharField(max_length=10, choices=Role.choices, default=Role.USER)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.display_name or self.user.username} ({self.get_role_display()})"

    @classmethod
    def for_user(cls, user):
        """Return the user's profile, creating it on first use."""
        profile, _created = cls.objects.get_or_create(
            user=user,
            defaults={"display_name": user.get_full_name() or user.username},
        )
        return profile


class Booking(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        CONFIRMED = "confirmed", "Confirmed"
        CANCELLED = "cancelled", "Cancelled"
        COMPLETED = "completed", "Completed"

    # Every status but cancelled counts against the flight
    SEAT_HOLDING = (Status.PENDING, Status.CONFIRMED, Status.COMPLETED)
    # Bookings that have not flown yet
    ACTIVE = (Status.PENDING, Status.CONFIRMED)

    flight = models.ForeignKey(Flight, on_delete=models.CASCADE, related_name="bookings")
    user = models.ForeignKey(
        User, on_delete=models.SET_NULL, null=True, blank=True, related_name="bookings"
    )
    reference = models.CharField(max_length=20, unique=True, db_index=True, editable=False)
    selected_seats = models.JSONField(default=list)
    total_price = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.CONFIRMED,
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)

    def __str__(self):
        return f"{self.reference} - {self.flight.flight_number}"

    @property
    def seat_count(self):
        return len(self.selected_seats or [])

    @property
    def holds_seats(self):
        return self.status in self.SEAT_HOLDING

    def _generate_reference(self):
        alphabet = string.ascii_uppercase + string.digits
        return "".join(secrets.choice(alphabet) for _ in range(8))

    def save(self, *args, **kwargs):
        if not self.reference:
            for _ in range(10):
                candidate = self._generate_reference()
                if not Booking.objects.filter(reference=candidate).exists():
                    self.reference = candidate
                    break
        super().save(*args, **kwargs)


class Passenger(models.Model):
    booking = models.ForeignKey(Booking, on_delete=models.CASCADE, related_name="passengers")
    position = models.PositiveSmallIntegerField(default=0)
    name = models.CharField(max_length=120)
    email = models.EmailField()
    phone = models.CharField(max_length=24, blank=True)
    seat_assignment = models.CharField(max_length=6, blank=True)

    class Meta:
        ordering = ("booking", "position")

    def __str__(self):
        return f"{self.name} ({self.seat_assignment or 'unassigned'})"
