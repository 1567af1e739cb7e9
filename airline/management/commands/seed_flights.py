from datetime import timedelta
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.utils import timezone

from airline.models import Flight

HUB = "Manila"
DESTINATIONS = [
    ("Cebu", "1h 20m"),
    ("Davao", "1h 55m"),
    ("Iloilo", "1h 10m"),
    ("Bacolod", "1h 15m"),
    ("Puerto Princesa", "1h 25m"),
    ("Tagbilaran", "1h 20m"),
    ("Cagayan de Oro", "1h 35m"),
    ("Zamboanga", "1h 50m"),
    ("Singapore", "3h 40m"),
    ("Hong Kong", "2h 10m"),
    ("Tokyo", "4h 25m"),
    ("Seoul", "3h 55m"),
]


class Command(BaseCommand):
    help = "Create a demo network of flights out of the hub for the coming days."

    def add_arguments(self, parser):
        parser.add_argument("--days", type=int, default=7, help="Days of departures to create.")
        parser.add_argument("--capacity", type=int, default=60, help="Seats per flight.")

    def handle(self, *args, **options):
        today = timezone.localdate()
        created = 0
        for day in range(options["days"]):
            travel_date = today + timedelta(days=day)
            for index, (destination, duration) in enumerate(DESTINATIONS, start=1):
                hour = 6 + (index % 12)
                flight, was_created = Flight.objects.get_or_create(
                    flight_number=f"SL{200 + index}",
                    date=travel_date,
                    defaults={
                        "airline": "SkyLedger Air",
                        "origin": HUB,
                        "destination": destination,
                        "departure": f"{hour:02d}:00",
                        "arrival": f"{hour + 1 + index % 4:02d}:30",
                        "duration": duration,
                        "stops": "Non-stop",
                        "price": Decimal(1999 + index * 350),
                        "capacity": options["capacity"],
                    },
                )
                if was_created:
                    created += 1
        self.stdout.write(self.style.SUCCESS(f"Created {created} flight(s)."))
