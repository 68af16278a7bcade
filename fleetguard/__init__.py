"""Real-time fleet telemetry monitoring: trip matching, geofence alerts and driver scoring."""

__version__ = "0.1.0"
