"""IIoT Listener — telemetry ingestion, change detection and alarm generation."""

__version__ = "1.0.0"
