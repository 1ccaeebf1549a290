"""
auth/errors.py -- Exceptions raised by the auth stores.

Login and recovery failures are ordinary outcomes and are modelled as enums in
auth/models.py. Exceptions here are for conditions that end the attempt.
"""


class StoreUnavailable(RuntimeError):
    """The identity or session-state store could not be reached.

    Fatal for the current attempt. Callers surface it as a generic
    "try again" failure and never retry.
    """


class PasswordPolicyError(ValueError):
    """A new password was rejected (too short, confirmation mismatch)."""
