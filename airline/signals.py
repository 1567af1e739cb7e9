from django.contrib.auth.signals import user_logged_in
from django.dispatch import receiver

from .models import Profile


@receiver(user_logged_in)
def ensure_profile(sender, request, user, **kwargs):
    # First successful sign-in creates the profile
    Profile.for_user(user)
