class FleetGuardError(Exception):
    """Base class for every error raised by the monitoring engine."""


class TelemetryError(FleetGuardError):
    """A telemetry payload could not be turned into a usable fix."""


class ZoneParseError(FleetGuardError):
    """A zone definition carries coordinates we cannot interpret."""


class PersistenceError(FleetGuardError):
    """A durable write failed after all retries."""
