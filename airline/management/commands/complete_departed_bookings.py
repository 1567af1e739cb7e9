from django.core.management.base import BaseCommand, CommandError
from django.utils.dateparse import parse_date

from airline.exceptions import StorageError
from airline.ledger import complete_departed_bookings


class Command(BaseCommand):
    help = "Mark confirmed bookings on flights that have already departed as completed."

    def add_arguments(self, parser):
        parser.add_argument(
            "--date",
            help="Treat flights dated before this day (YYYY-MM-DD) as departed. Defaults to today.",
        )

    def handle(self, *args, **options):
        today = None
        if options["date"]:
            try:
                today = parse_date(options["date"])
            except ValueError:
                today = None
            if today is None:
                raise CommandError("--date must look like YYYY-MM-DD.")

        try:
            completed = complete_departed_bookings(today)
        except StorageError as exc:
            raise CommandError(exc.message) from exc
        self.stdout.write(self.style.SUCCESS(f"Completed {completed} booking(s)."))
