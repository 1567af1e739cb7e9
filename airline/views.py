from functools import wraps
import json
import logging

from django.contrib.auth import authenticate
from django.contrib.auth import login, logout
from django.contrib.auth.models import User
from django.forms.models import model_to_dict
from django.http import JsonResponse
from django.utils.dateparse import parse_date
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from . import analytics, ledger
from .exceptions import (
    AuthError,
    InvalidRequestError,
    LedgerError,
    NotFoundError,
    PermissionDeniedError,
)
from .forms import (
    FLIGHT_FIELD_KEYS,
    FlightForm,
    PassengerSigninForm,
    PassengerSignupForm,
    ProfileForm,
)
from .models import Booking, Flight, Profile

logger = logging.getLogger(__name__)


def api_endpoint(view):
    """Render ledger errors as JSON error bodies with their status code."""

    @wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except LedgerError as exc:
            if exc.status_code >= 500:
                logger.error("%s %s failed: %s", request.method, request.path, exc.message)
            return JsonResponse(exc.to_payload(), status=exc.status_code)

    return wrapper


def _json_body(request):
    try:
        payload = json.loads(request.body.decode("utf-8") or "{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequestError("Invalid payload.")
    if not isinstance(payload, dict):
        raise InvalidRequestError("Invalid payload.")
    return payload


def _identity(request):
    return ledger.identity_for_user(request.user)


def _signed_in(request):
    identity = _identity(request)
    if identity is None:
        raise AuthError()
    return identity


def _admin(request):
    identity = _signed_in(request)
    if not identity.is_admin:
        raise PermissionDeniedError("Only administrators can do this.")
    return identity


def _query_id(request, label):
    value = (request.GET.get("id") or "").strip()
    if not value:
        raise InvalidRequestError(f"{label} ID is required")
    return value


def _form_error(form):
    return InvalidRequestError(
        "Please correct the highlighted fields.",
        fields={name: [str(message) for message in errors] for name, errors in form.errors.items()},
    )


def _flight_payload(flight):
    return {
        "id": flight.pk,
        "airline": flight.airline,
        "flightNumber": flight.flight_number,
        "from": flight.origin,
        "to": flight.destination,
        "date": flight.date,
        "departure": flight.departure,
        "arrival": flight.arrival,
        "duration": flight.duration,
        "stops": flight.stops,
        "price": flight.price,
        "capacity": flight.capacity,
        "booked": flight.booked,
        "seats": flight.seats,
        "createdAt": flight.created_at,
        "updatedAt": flight.updated_at,
    }


def _booking_payload(booking, with_flight=False):
    payload = {
        "id": booking.pk,
        "bookingRef": booking.reference,
        "userId": booking.user_id,
        "flightId": booking.flight_id,
        "passengers": [
            {
                "name": passenger.name,
                "email": passenger.email,
                "phone": passenger.phone,
                "seatAssignment": passenger.seat_assignment or None,
            }
            for passenger in booking.passengers.all()
        ],
        "selectedSeats": list(booking.selected_seats or []),
        "totalPrice": booking.total_price,
        "status": booking.status,
        "createdAt": booking.created_at,
        "updatedAt": booking.updated_at,
    }
    if with_flight:
        flight = booking.flight
        payload["flight"] = {
            "flightNumber": flight.flight_number,
            "airline": flight.airline,
            "from": flight.origin,
            "to": flight.destination,
            "date": flight.date,
            "departure": flight.departure,
            "arrival": flight.arrival,
        }
    return payload


def _profile_payload(profile):
    return {
        "id": profile.user_id,
        "email": profile.user.email,
        "displayName": profile.display_name,
        "phone": profile.phone or None,
        "passport": profile.passport or None,
        "role": profile.role,
        "createdAt": profile.created_at,
        "updatedAt": profile.updated_at,
    }


def _get_flight(flight_id):
    try:
        return Flight.objects.get(pk=flight_id)
    except (Flight.DoesNotExist, ValueError, TypeError):
        raise NotFoundError("Flight not found.")


def _get_booking(booking_id):
    try:
        return (
            Booking.objects.select_related("flight")
            .prefetch_related("passengers")
            .get(pk=booking_id)
        )
    except (Booking.DoesNotExist, ValueError, TypeError):
        raise NotFoundError("Booking not found.")


def _flight_form_data(payload, instance=None):
    data = model_to_dict(instance, fields=FLIGHT_FIELD_KEYS.values()) if instance else {}
    for key, field in FLIGHT_FIELD_KEYS.items():
        if key in payload:
            data[field] = payload[key]
    return data


# Flights


def _list_flights(request):
    flights = Flight.objects.all()

    from_name = (request.GET.get("from") or "").strip()
    to_name = (request.GET.get("to") or "").strip()
    date_value = (request.GET.get("date") or "").strip()
    if from_name:
        flights = flights.filter(origin__iexact=from_name)
    if to_name:
        flights = flights.filter(destination__iexact=to_name)
    if date_value:
        try:
            travel_date = parse_date(date_value)
        except ValueError:
            travel_date = None
        if travel_date is None:
            raise InvalidRequestError("Date must look like YYYY-MM-DD.")
        flights = flights.filter(date=travel_date)

    return JsonResponse([_flight_payload(flight) for flight in flights], safe=False)


def _create_flight(request):
    identity = _admin(request)
    form = FlightForm(_flight_form_data(_json_body(request)))
    if not form.is_valid():
        raise _form_error(form)
    flight = ledger.create_flight(identity, **form.cleaned_data)
    return JsonResponse({"success": True, "id": flight.pk, "flight": _flight_payload(flight)}, status=201)


def _update_flight(request):
    identity = _admin(request)
    flight = _get_flight(_query_id(request, "Flight"))
    form = FlightForm(_flight_form_data(_json_body(request), instance=flight), instance=flight)
    if not form.is_valid():
        raise _form_error(form)
    changes = {field: form.cleaned_data[field] for field in form.changed_data}
    flight = ledger.update_flight(identity, flight.pk, **changes)
    return JsonResponse({"success": True, "id": flight.pk, "flight": _flight_payload(flight)})


def _delete_flight(request):
    identity = _admin(request)
    flight_id = _query_id(request, "Flight")
    ledger.delete_flight(identity, flight_id)
    return JsonResponse({"success": True, "id": flight_id})


@api_endpoint
@require_http_methods(["GET", "POST", "PUT", "DELETE"])
def flights_api(request):
    if request.method == "POST":
        return _create_flight(request)
    if request.method == "PUT":
        return _update_flight(request)
    if request.method == "DELETE":
        return _delete_flight(request)
    return _list_flights(request)


@api_endpoint
@require_GET
def flight_detail_api(request, flight_id):
    return JsonResponse(_flight_payload(_get_flight(flight_id)))


@api_endpoint
@require_GET
def flight_seats_api(request, flight_id):
    return JsonResponse(
        {
            "flightId": flight_id,
            "reservedSeats": ledger.reserved_seats(flight_id),
            "availableSeats": ledger.available_seats(flight_id),
        }
    )


# Bookings


def _query_user_id(request, identity):
    value = (request.GET.get("userId") or "").strip()
    return ledger.parse_user_id(value) if value else identity.user_id


def _list_bookings(request):
    identity = _signed_in(request)
    user_id = _query_user_id(request, identity)
    if not identity.can_act_for(user_id):
        raise PermissionDeniedError("You can only view your own bookings.")

    bookings = (
        Booking.objects.select_related("flight")
        .prefetch_related("passengers")
        .filter(user_id=user_id)
    )
    return JsonResponse([_booking_payload(booking, with_flight=True) for booking in bookings], safe=False)


def _create_booking(request):
    identity = _signed_in(request)
    payload = _json_body(request)
    if not payload.get("flightId") or not payload.get("selectedSeats") or not payload.get("passengers"):
        raise InvalidRequestError("Missing required fields")

    reservation = ledger.reserve_seats(
        identity,
        payload["flightId"],
        payload["selectedSeats"],
        payload["passengers"],
        booking_ref=payload.get("bookingRef"),
        user_id=payload.get("userId"),
    )
    quoted = payload.get("totalPrice")
    if quoted is not None and str(quoted) != str(reservation.total_price):
        logger.debug(
            "Booking %s quoted %s but was priced at %s",
            reservation.reference,
            quoted,
            reservation.total_price,
        )
    body = {"success": True, "message": "Booking created successfully"}
    body.update(reservation.to_dict())
    return JsonResponse(body, status=201)


def _update_booking(request):
    identity = _admin(request)
    booking_id = _query_id(request, "Booking")
    status = _json_body(request).get("status")
    if not status:
        raise InvalidRequestError("Booking status is required")
    booking = ledger.set_booking_status(identity, booking_id, status)
    return JsonResponse({"success": True, "id": booking.pk, "status": booking.status})


def _delete_booking(request):
    identity = _admin(request)
    booking_id = _query_id(request, "Booking")
    ledger.delete_booking(identity, booking_id)
    return JsonResponse({"success": True, "id": booking_id})


@api_endpoint
@require_http_methods(["GET", "POST", "PUT", "DELETE"])
def bookings_api(request):
    if request.method == "POST":
        return _create_booking(request)
    if request.method == "PUT":
        return _update_booking(request)
    if request.method == "DELETE":
        return _delete_booking(request)
    return _list_bookings(request)


@api_endpoint
@require_GET
def booking_detail_api(request, booking_id):
    identity = _signed_in(request)
    booking = _get_booking(booking_id)
    if not identity.can_act_for(booking.user_id):
        # Other users' bookings look the same as missing ones
        raise NotFoundError("Booking not found.")
    return JsonResponse(_booking_payload(booking, with_flight=True))


@api_endpoint
@require_POST
def cancel_booking_api(request, booking_id):
    identity = _signed_in(request)
    booking = ledger.cancel_booking(identity, booking_id)
    return JsonResponse({"success": True, "id": booking.pk, "status": booking.status})


# Back-office


@api_endpoint
@require_GET
def admin_bookings_api(request):
    _admin(request)
    bookings = Booking.objects.select_related("flight").prefetch_related("passengers")
    status = (request.GET.get("status") or "").strip()
    if status:
        bookings = bookings.filter(status=status)
    return JsonResponse([_booking_payload(booking, with_flight=True) for booking in bookings], safe=False)


@api_endpoint
@require_GET
def admin_analytics_api(request):
    _admin(request)
    return JsonResponse(analytics.build_report().to_dict())


# Accounts


def _target_user(request, identity):
    user_id = _query_user_id(request, identity)
    if not identity.can_act_for(user_id):
        raise PermissionDeniedError("You can only manage your own profile.")
    try:
        return User.objects.get(pk=user_id)
    except (User.DoesNotExist, ValueError, TypeError):
        raise NotFoundError("User not found")


@api_endpoint
@require_http_methods(["GET", "PUT"])
def users_api(request):
    identity = _signed_in(request)
    profile = Profile.for_user(_target_user(request, identity))
    if request.method == "GET":
        return JsonResponse(_profile_payload(profile))

    payload = _json_body(request)
    email = payload.get("email")
    if email is not None and str(email).strip().lower() != profile.user.email.lower():
        raise InvalidRequestError("Email cannot be changed.")
    role = payload.get("role")
    if role is not None and role != profile.role:
        if not identity.is_admin:
            raise PermissionDeniedError("Only administrators can change roles.")
        if role not in Profile.Role.values:
            raise InvalidRequestError(f"Unknown role {role!r}.")

    data = model_to_dict(profile, fields=ProfileForm.Meta.fields)
    for key, field in (("displayName", "display_name"), ("phone", "phone"), ("passport", "passport")):
        if key in payload:
            data[field] = payload[key] or ""
    form = ProfileForm(data, instance=profile)
    if not form.is_valid():
        raise _form_error(form)
    profile = form.save(commit=False)
    if role is not None:
        profile.role = role
    profile.save()
    logger.info("Profile of user %s updated by user %s", profile.user_id, identity.user_id)
    return JsonResponse({"success": True, "user": _profile_payload(profile)})


@api_endpoint
@require_POST
def signup_api(request):
    payload = _json_body(request)
    form = PassengerSignupForm(
        {
            "username": payload.get("username", ""),
            "email": payload.get("email", ""),
            "display_name": payload.get("displayName", ""),
            "password1": payload.get("password1", ""),
            "password2": payload.get("password2", ""),
        }
    )
    if not form.is_valid():
        raise _form_error(form)
    user = form.save()
    login(request, user)
    return JsonResponse({"success": True, "userId": user.pk}, status=201)


@api_endpoint
@require_POST
def signin_api(request):
    form = PassengerSigninForm(_json_body(request))
    if not form.is_valid():
        raise _form_error(form)

    identifier = form.cleaned_data["identifier"].strip()
    username = identifier
    if "@" in identifier:
        matched = User.objects.filter(email__iexact=identifier).first()
        if matched:
            username = matched.username

    user = authenticate(request, username=username, password=form.cleaned_data["password"])
    if not user:
        raise AuthError("Invalid credentials. Please try again.")
    login(request, user)
    identity = ledger.identity_for_user(user)
    return JsonResponse({"success": True, "userId": user.pk, "role": identity.role})


@require_POST
def signout_api(request):
    logout(request)
    return JsonResponse({"success": True})


@require_GET
def current_user_api(request):
    identity = _identity(request)
    if identity is None:
        return JsonResponse({"userId": None, "role": None})
    return JsonResponse({"userId": identity.user_id, "role": identity.role})
