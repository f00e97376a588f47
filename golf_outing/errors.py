"""Error taxonomy shared by the team, reservation, sponsor and webhook code."""

from __future__ import annotations


class OutingError(Exception):
    """Base error; ``status_code`` is what the HTTP layer responds with."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(OutingError):
    status_code = 400


class MissingUserId(ValidationError):
    def __init__(self, message: str = "Missing userId in metadata"):
        super().__init__(message)


class InvalidMetadataShape(ValidationError):
    pass


class NotFound(OutingError):
    status_code = 404


class SponsorNotFound(NotFound):
    def __init__(self, message: str = "Sponsor not found"):
        super().__init__(message)


class Forbidden(OutingError):
    status_code = 403


class SpotNotOwned(Forbidden):
    def __init__(self, message: str = "Spot not found or not owned by user"):
        super().__init__(message)


class Conflict(OutingError):
    status_code = 409


class TeamFull(Conflict):
    def __init__(self, message: str = "Team is full"):
        super().__init__(message)


class DuplicateEmail(Conflict):
    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Email {email} is already in use")


class SpotAlreadyAssigned(Conflict):
    def __init__(self, message: str = "Spot already assigned to a team"):
        super().__init__(message)


class InsufficientSpots(Conflict):
    def __init__(self, message: str = "Not enough spots available"):
        super().__init__(message)


class DuplicateSponsor(Conflict):
    def __init__(self, message: str = "You already have a sponsor. You can edit your existing sponsorship."):
        super().__init__(message)


class SpotLimitExceeded(Conflict):
    pass


class NotWhitelisted(OutingError):
    status_code = 403

    def __init__(self, message: str = "Not authorized to join private team"):
        super().__init__(message)


class UpstreamFailure(OutingError):
    status_code = 502


class StoreFailure(UpstreamFailure):
    status_code = 500


class InvalidSignature(OutingError):
    status_code = 400
