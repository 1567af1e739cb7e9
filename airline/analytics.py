"""Back-office reporting over flights and bookings."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List

from django.db.models import Count, DecimalField, IntegerField, Q, Sum, Value
from django.db.models.functions import Coalesce, TruncMonth

from .models import Booking, Flight

# Statuses that count as earned revenue
REVENUE_STATUSES = (Booking.Status.CONFIRMED, Booking.Status.COMPLETED)

ZERO = Value(Decimal("0.00"), output_field=DecimalField(max_digits=14, decimal_places=2))


@dataclass(frozen=True)
class MonthlyBucket:
    month: str
    bookings: int
    revenue: Decimal

    def to_dict(self):
        return {"month": self.month, "bookings": self.bookings, "revenue": self.revenue}


@dataclass
class AnalyticsReport:
    total_flights: int = 0
    total_bookings: int = 0
    bookings_by_status: Dict[str, int] = field(default_factory=dict)
    total_revenue: Decimal = Decimal("0.00")
    seats_booked: int = 0
    seats_capacity: int = 0
    monthly: List[MonthlyBucket] = field(default_factory=list)

    @property
    def occupancy_rate(self):
        """Booked share of all capacity, as a percentage with one decimal."""
        if not self.seats_capacity:
            return 0.0
        return round(self.seats_booked * 100 / self.seats_capacity, 1)

    def revenue_for(self, month):
        for bucket in self.monthly:
            if bucket.month == month:
                return bucket.revenue
        return Decimal("0.00")

    def to_dict(self):
        return {
            "totalFlights": self.total_flights,
            "totalBookings": self.total_bookings,
            "bookingsByStatus": dict(self.bookings_by_status),
            "totalRevenue": self.total_revenue,
            "seatsBooked": self.seats_booked,
            "seatsCapacity": self.seats_capacity,
            "occupancyRate": self.occupancy_rate,
            "monthly": [bucket.to_dict() for bucket in self.monthly],
        }


def _revenue_sum():
    return Coalesce(Sum("total_price", filter=Q(status__in=REVENUE_STATUSES)), ZERO)


def monthly_buckets(bookings=None):
    """Bucket bookings by creation month, oldest first."""
    if bookings is None:
        bookings = Booking.objects.all()
    rows = (
        bookings.annotate(month=TruncMonth("created_at"))
        .values("month")
        .annotate(bookings=Count("id"), revenue=_revenue_sum())
        .order_by("month")
    )
    return [
        MonthlyBucket(
            month=row["month"].strftime("%Y-%m"),
            bookings=row["bookings"],
            revenue=Decimal(row["revenue"]).quantize(Decimal("0.01")),
        )
        for row in rows
        if row["month"] is not None
    ]


def build_report():
    flights = Flight.objects.aggregate(
        total=Count("id"),
        booked=Coalesce(Sum("booked"), 0, output_field=IntegerField()),
        capacity=Coalesce(Sum("capacity"), 0, output_field=IntegerField()),
    )
    by_status = {status: 0 for status in Booking.Status.values}
    for row in Booking.objects.values("status").annotate(count=Count("id")):
        by_status[row["status"]] = row["count"]
    revenue = Booking.objects.aggregate(revenue=_revenue_sum())["revenue"]

    return AnalyticsReport(
        total_flights=flights["total"],
        total_bookings=sum(by_status.values()),
        bookings_by_status=by_status,
        total_revenue=Decimal(revenue).quantize(Decimal("0.01")),
        seats_booked=flights["booked"],
        seats_capacity=flights["capacity"],
        monthly=monthly_buckets(),
    )
