"""Custom signals for the registration app.

Signals:
    registration_completed: Sent once when a registration is confirmed, after
        the confirming transaction has committed.
        Sender: The ``Registration`` class.
        Kwargs:
            registration: The confirmed ``Registration`` instance.
"""

from django.dispatch import Signal

registration_completed = Signal()
