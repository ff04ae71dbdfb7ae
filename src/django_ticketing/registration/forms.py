"""Forms validating the JSON checkout endpoints."""

from django import forms


class CouponValidateForm(forms.Form):
    """Coupon code to price against the event."""

    coupon_code = forms.CharField(max_length=100, strip=True)


class InitiateForm(forms.Form):
    """Attendee details collected when checkout starts."""

    email = forms.EmailField()
    name = forms.CharField(max_length=200, strip=True)
    surname = forms.CharField(max_length=200, required=False, strip=True)
    company = forms.CharField(max_length=200, required=False, strip=True)
    phone = forms.CharField(max_length=50, required=False, strip=True)
    coupon_code = forms.CharField(max_length=100, required=False, strip=True)

    def clean_email(self) -> str:
        return self.cleaned_data["email"].lower()


class CompleteForm(forms.Form):
    """Identifies the draft registration to finish.

    The email must match the registration so ids cannot simply be guessed.
    """

    registration_id = forms.IntegerField(min_value=1)
    email = forms.EmailField()
    success_url = forms.URLField(required=False, max_length=2000)
    cancel_url = forms.URLField(required=False, max_length=2000)

    def clean_email(self) -> str:
        return self.cleaned_data["email"].lower()
