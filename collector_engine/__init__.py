"""collector-engine - configuration updater and container enrichment for the telemetry collector."""

__version__ = "1.0.0"
