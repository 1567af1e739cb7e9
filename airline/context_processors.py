from django.db import DatabaseError
from django.utils import timezone


def admin_insights(request):
    """Small metrics block for admin dashboard templates."""
    if not request.path.startswith("/admin"):
        return {}

    try:
        from .analytics import build_report
        from .models import Flight

        report = build_report()
        upcoming_qs = Flight.objects.filter(date__gte=timezone.localdate()).order_by(
            "date", "departure"
        )[:5]
        admin_metrics = {
            "flights": report.total_flights,
            "bookings": report.total_bookings,
            "revenue": report.total_revenue,
            "occupancy_rate": report.occupancy_rate,
            "pending_bookings": report.bookings_by_status.get("pending", 0),
            "upcoming_departures": list(upcoming_qs),
        }
        return {"admin_metrics": admin_metrics}
    except DatabaseError:
        return {}
