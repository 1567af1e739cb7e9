from django import forms
from django.contrib.auth.forms import UserCreationForm
from django.contrib.auth.models import User

from .models import Flight, Profile

BLOCKED_EMAIL_DOMAINS = {
    "tempmail.com",
    "guerrillamail.com",
    "mailinator.com",
    "10minutemail.com",
    "throwaway.email",
    "temp-mail.org",
    "fakeinbox.com",
    "trashmail.com",
    "getnada.com",
    "maildrop.cc",
    "yopmail.com",
    "sharklasers.com",
    "guerrillamail.info",
    "grr.la",
    "spam4.me",
    "tempinbox.com",
}

# JSON keys accepted by the flight endpoints, mapped to model fields
FLIGHT_FIELD_KEYS = {
    "airline": "airline",
    "flightNumber": "flight_number",
    "from": "origin",
    "to": "destination",
    "date": "date",
    "departure": "departure",
    "arrival": "arrival",
    "duration": "duration",
    "stops": "stops",
    "price": "price",
    "capacity": "capacity",
}


class FlightForm(forms.ModelForm):
    class Meta:
        model = Flight
        fields = tuple(FLIGHT_FIELD_KEYS.values())

    def clean_price(self):
        price = self.cleaned_data["price"]
        if price is not None and price <= 0:
            raise forms.ValidationError("Price must be positive.")
        return price

    def clean_capacity(self):
        capacity = self.cleaned_data["capacity"]
        if capacity is not None and capacity < 1:
            raise forms.ValidationError("Capacity must be at least 1.")
        return capacity

    def clean(self):
        cleaned_data = super().clean()
        origin = (cleaned_data.get("origin") or "").strip().lower()
        destination = (cleaned_data.get("destination") or "").strip().lower()
        if origin and origin == destination:
            raise forms.ValidationError({"destination": "Destination must differ from origin."})
        return cleaned_data


class ProfileForm(forms.ModelForm):
    class Meta:
        model = Profile
        fields = ("display_name", "phone", "passport")


def _check_email_domain(email):
    domain = email.rsplit("@", 1)[-1]
    if domain in BLOCKED_EMAIL_DOMAINS:
        raise forms.ValidationError("Disposable email addresses are not allowed.")


class PassengerSignupForm(UserCreationForm):
    username = forms.CharField(required=True, max_length=150)
    email = forms.EmailField(required=True)
    display_name = forms.CharField(required=False, max_length=150)

    class Meta:
        model = User
        fields = ("username", "email", "display_name", "password1", "password2")

    error_messages = {
        "password_mismatch": "Passwords do not match.",
    }

    def clean_email(self):
        email = self.cleaned_data["email"].strip().lower()
        _check_email_domain(email)
        if User.objects.filter(email=email).exists():
            raise forms.ValidationError("An account with this email already exists.")
        return email

    def clean_username(self):
        username = self.cleaned_data["username"].strip()
        if User.objects.filter(username__iexact=username).exists():
            raise forms.ValidationError("This username is already taken.")
        return username

    def save(self, commit=True):
        user = super().save(commit=False)
        email = self.cleaned_data["email"].strip().lower()
        display_name = self.cleaned_data.get("display_name", "").strip()
        user.username = self.cleaned_data["username"].strip()
        user.email = email
        if display_name:
            first, *_rest = display_name.split(" ", 1)
            user.first_name = first
        if commit:
            user.save()
            Profile.objects.update_or_create(
                user=user,
                defaults={"display_name": display_name or user.username},
            )
        return user


class PassengerSigninForm(forms.Form):
    identifier = forms.CharField(label="Email or username", max_length=150)
    password = forms.CharField(widget=forms.PasswordInput)
