"""Exception taxonomy for the gate.

Every condition the orchestrator may surface to a user derives from
``GateError`` and carries a ``user_message`` suitable for display. Store
failures are kept separate (``StoreError``) because components absorb
them instead of surfacing them.
"""


class GateError(Exception):
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None, *, user_message: str | None = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class InvalidPhoneNumber(GateError, ValueError):
    user_message = "Invalid phone number. Use the +976XXXXXXXX format."


class LocationPermissionDenied(GateError):
    user_message = (
        "Location permission is required. Enable Location for this site "
        "in your browser settings and try again."
    )


class GeolocationUnavailable(GateError):
    user_message = "Could not determine your location. Turn on GPS and try again."


class CameraUnavailable(GateError):
    user_message = (
        "Camera access is required. Allow camera access for this site, "
        "or open the page in Safari/Chrome instead of an in-app browser."
    )


class UnsupportedDevice(GateError):
    user_message = "This device cannot play the AR video."


class MediaLoadFailed(GateError):
    user_message = "The video could not be loaded. Check your connection and try again."

    def __init__(self, attempts, last_error: Exception | None = None):
        self.attempts = list(attempts)
        self.last_error = last_error
        super().__init__(
            f"all {len(self.attempts)} load attempts failed (last error: {last_error!r})"
        )


class AutoplayBlocked(GateError):
    user_message = "Tap the screen to start the video."


class PhoneAlreadyRegistered(GateError):
    user_message = "This phone number is already registered."


class ContentNotFound(GateError):
    user_message = "No video is available here yet."


class ContentParseError(GateError, ValueError):
    user_message = "The video configuration is invalid."


class StoreError(Exception):
    """Remote document store failure (read, write or query)."""


class DocumentExists(StoreError):
    """Create-only write hit an existing document (permission denied)."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"permission-denied: {collection}/{doc_id} already exists")
