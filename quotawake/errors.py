"""Exception hierarchy shared across the trigger engine."""


class QuotaWakeError(Exception):
    """Base class for all quota-wake errors."""


class ConfigurationError(QuotaWakeError):
    """A schedule or setting is invalid and was rejected before being applied."""


class AuthorizationError(QuotaWakeError):
    """No usable access token for an account."""


class TransportError(QuotaWakeError):
    """An outbound request to the model backend failed."""
