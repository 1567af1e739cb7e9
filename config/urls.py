from django.contrib import admin
from django.urls import path
from airline.views import (
    admin_analytics_api,
    admin_bookings_api,
    booking_detail_api,
    bookings_api,
    cancel_booking_api,
    current_user_api,
    flight_detail_api,
    flight_seats_api,
    flights_api,
    signin_api,
    signout_api,
    signup_api,
    users_api,
)

urlpatterns = [
    # Must precede the admin site, whose catch-all would swallow them
    path("admin/analytics", admin_analytics_api),
    path("admin/bookings", admin_bookings_api),
    path("admin/", admin.site.urls),
    path("flights", flights_api),
    path("flights/<int:flight_id>", flight_detail_api),
    path("flights/<int:flight_id>/seats", flight_seats_api),
    path("bookings", bookings_api),
    path("bookings/<int:booking_id>", booking_detail_api),
    path("bookings/<int:booking_id>/cancel", cancel_booking_api),
    path("users", users_api),
    path("auth/signup", signup_api),
    path("auth/signin", signin_api),
    path("auth/signout", signout_api),
    path("auth/me", current_user_api),
]
