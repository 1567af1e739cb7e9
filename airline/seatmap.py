"""Seat designators ("12C") and the seat space of a flight."""

import re

from django.conf import settings

from .exceptions import InvalidRequestError

DEFAULT_COLUMNS = "ABCDEF"
SEAT_PATTERN = re.compile(r"^([1-9][0-9]{0,2})([A-Z])$")


def seat_columns():
    return getattr(settings, "SEAT_MAP_COLUMNS", DEFAULT_COLUMNS) or DEFAULT_COLUMNS


def parse_seat(value):
    """Split a designator into (row, column); raise on anything else."""
    if not isinstance(value, str):
        raise InvalidRequestError(f"Seat {value!r} is not a seat designator.")
    match = SEAT_PATTERN.match(value.strip().upper())
    if not match or match.group(2) not in seat_columns():
        raise InvalidRequestError(f"Seat {value!r} is not a seat designator.")
    return int(match.group(1)), match.group(2)


def normalize_seats(values):
    """Return upper-cased designators in request order, rejecting duplicates."""
    if not isinstance(values, (list, tuple)) or not values:
        raise InvalidRequestError("Select at least one seat.")

    seats = []
    for value in values:
        row, column = parse_seat(value)
        seat = f"{row}{column}"
        if seat in seats:
            raise InvalidRequestError(f"Seat {seat} was selected more than once.")
        seats.append(seat)
    return seats


def seat_space(capacity):
    """First `capacity` designators of the seat map, row by row."""
    columns = seat_columns()
    return [
        f"{index // len(columns) + 1}{columns[index % len(columns)]}"
        for index in range(max(capacity, 0))
    ]


def _seat_key(seat):
    row, column = parse_seat(seat)
    return row, seat_columns().index(column)


def sort_seats(seats):
    return sorted(seats, key=_seat_key)
