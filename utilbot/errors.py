# -*- coding: utf-8 -*-

# --- EXCEPTIONS ---


class ConfigError(Exception):
    """Raised when a required environment variable is missing or malformed."""


class OutsideRootError(ValueError):
    """Raised when a derived path would leave the user's data directory."""

    def __init__(self, user_id: int, candidate: str):
        super().__init__(f"Path '{candidate}' escapes the data directory of user {user_id}")
        self.user_id = user_id
        self.candidate = candidate


class SessionInvariantError(RuntimeError):
    """A payload was mutated for a mode the user is not in. Indicates a routing bug."""


class ServiceError(Exception):
    """Base class for failures of external collaborators (HTTP APIs, shell tools)."""


class OcrServiceError(ServiceError):
    pass


class GeocodingError(ServiceError):
    pass


class RoutingError(ServiceError):
    pass


class ArchiveToolError(ServiceError):
    pass


class MapRenderError(ServiceError):
    pass
