"""
errors.py — Exception taxonomy for the planner.

  PlanningValidationError  bad input caught before any external call
  ServiceError             an external provider failed (maps, AI gateway)
    RouteNotFound          directions provider found no route
    LocationNotFound       geocoder found nothing for a required lookup
    RateLimitedError       provider quota / rate limit hit
    MalformedResponseError provider answered, but the payload is unusable
  ShareSlugTakenError      another public itinerary already owns the slug
  ItineraryNotFound        no live itinerary with that id for this owner

Pure day-plan and waypoint transformations never raise these for unknown ids;
they simply return the input unchanged.
"""


class PlanningError(Exception):
    """Base class for every planner failure surfaced to a caller."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PlanningValidationError(PlanningError):
    status_code = 400


class ServiceError(PlanningError):
    status_code = 502


class RouteNotFound(ServiceError):
    status_code = 404


class LocationNotFound(ServiceError):
    status_code = 404


class RateLimitedError(ServiceError):
    status_code = 429


class MalformedResponseError(ServiceError):
    status_code = 502


class ShareSlugTakenError(PlanningError):
    status_code = 409


class ItineraryNotFound(PlanningError):
    status_code = 404
