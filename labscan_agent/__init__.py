"""LabScan on-host telemetry agent."""

__version__ = "0.3.0"
