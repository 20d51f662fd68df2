"""Error taxonomy shared by the service facade and the HTTP layer."""

from __future__ import annotations


class AuctionError(Exception):
    """Base class for every client-visible failure raised by the core."""

    status_code = 400


class ValidationError(AuctionError, ValueError):
    """Malformed input: missing fields, non-positive page sizes or amounts."""

    status_code = 422


class NotFoundError(AuctionError, LookupError):
    """Referenced auction, bid or user does not exist."""

    status_code = 404


class AuthorizationError(AuctionError, PermissionError):
    """Actor is not permitted to perform the operation."""

    status_code = 403


class StateConflictError(AuctionError):
    """Operation is not valid for the auction's current status."""

    status_code = 409


class PersistenceError(AuctionError):
    """Underlying storage failure."""

    status_code = 500
