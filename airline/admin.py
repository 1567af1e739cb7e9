from django import forms
from django.contrib import admin, messages

from . import ledger
from .exceptions import LedgerError
from .forms import FlightForm
from .models import Booking, Flight, Passenger, Profile

admin.site.site_header = "SkyLedger Admin"
admin.site.site_title = "SkyLedger Admin"
admin.site.index_title = "Flights and Bookings"


class FlightAdminForm(FlightForm):
    def clean_capacity(self):
        capacity = super().clean_capacity()
        booked = self.instance.booked if self.instance.pk else 0
        if capacity is not None and capacity < booked:
            raise forms.ValidationError(
                f"{booked} seat(s) are already booked; capacity cannot go below that."
            )
        return capacity


class BookingInline(admin.TabularInline):
    model = Booking
    extra = 0
    fields = ("reference", "user", "selected_seats", "total_price", "status", "created_at")
    readonly_fields = fields
    show_change_link = True
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


class PassengerInline(admin.TabularInline):
    model = Passenger
    extra = 0
    fields = ("position", "name", "email", "phone", "seat_assignment")
    readonly_fields = ("position", "seat_assignment")
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Flight)
class FlightAdmin(admin.ModelAdmin):
    form = FlightAdminForm
    list_display = (
        "flight_number",
        "airline",
        "origin",
        "destination",
        "date",
        "departure",
        "price",
        "capacity",
        "booked",
        "seats_left",
    )
    list_filter = ("airline", "date")
    search_fields = ("flight_number", "airline", "origin", "destination")
    date_hierarchy = "date"
    list_per_page = 25
    readonly_fields = ("booked", "version", "created_at", "updated_at")
    inlines = (BookingInline,)

    @admin.display(description="Seats left")
    def seats_left(self, obj):
        return obj.seats

    def save_model(self, request, obj, form, change):
        if not change:
            super().save_model(request, obj, form, change)
            return
        changes = {field: form.cleaned_data[field] for field in form.changed_data}
        try:
            ledger.update_flight(ledger.identity_for_user(request.user), obj.pk, **changes)
        except LedgerError as exc:
            self.message_user(request, f"{obj.flight_number}: {exc.message}", level=messages.ERROR)

    def has_delete_permission(self, request, obj=None):
        if obj is not None and obj.bookings.filter(status__in=Booking.ACTIVE).exists():
            return False
        return super().has_delete_permission(request, obj)


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    list_display = (
        "reference",
        "user",
        "flight",
        "seat_list",
        "total_price",
        "status",
        "created_at",
    )
    list_filter = ("status", "created_at")
    search_fields = (
        "user__username",
        "user__email",
        "reference",
        "passengers__name",
        "passengers__email",
        "flight__flight_number",
    )
    readonly_fields = (
        "reference",
        "flight",
        "selected_seats",
        "total_price",
        "status",
        "created_at",
        "updated_at",
    )
    list_select_related = ("flight", "user")
    inlines = (PassengerInline,)
    actions = ("confirm_bookings", "cancel_bookings", "complete_bookings")

    @admin.display(description="Seats")
    def seat_list(self, obj):
        return ", ".join(obj.selected_seats or [])

    def has_add_permission(self, request):
        # Bookings are created through the booking API only
        return False

    def _apply_status(self, request, queryset, status):
        identity = ledger.identity_for_user(request.user)
        updated = 0
        failures = []
        for booking in queryset:
            try:
                ledger.set_booking_status(identity, booking.pk, status)
            except LedgerError as exc:
                failures.append(f"{booking.reference}: {exc.message}")
            else:
                updated += 1
        self.message_user(request, f"Marked {updated} booking(s) {status}.")
        if failures:
            self.message_user(request, "; ".join(failures), level=messages.WARNING)

    @admin.action(description="Confirm selected bookings")
    def confirm_bookings(self, request, queryset):
        self._apply_status(request, queryset, Booking.Status.CONFIRMED)

    @admin.action(description="Cancel selected bookings")
    def cancel_bookings(self, request, queryset):
        self._apply_status(request, queryset, Booking.Status.CANCELLED)

    @admin.action(description="Mark selected bookings completed")
    def complete_bookings(self, request, queryset):
        self._apply_status(request, queryset, Booking.Status.COMPLETED)

    def delete_model(self, request, obj):
        ledger.delete_booking(ledger.identity_for_user(request.user), obj.pk)

    def delete_queryset(self, request, queryset):
        identity = ledger.identity_for_user(request.user)
        for booking_id in queryset.values_list("pk", flat=True):
            ledger.delete_booking(identity, booking_id)


@admin.register(Profile)
class ProfileAdmin(admin.ModelAdmin):
    list_display = ("user", "display_name", "phone", "role", "created_at")
    list_filter = ("role",)
    search_fields = ("user__username", "user__email", "display_name", "passport")
    readonly_fields = ("created_at", "updated_at")
