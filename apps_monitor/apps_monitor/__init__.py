"""Tenant telemetry polling, idempotent ingestion and Slack alerting."""

__version__ = "0.1.0"
