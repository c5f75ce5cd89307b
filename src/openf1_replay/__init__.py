"""Telemetry replay and progressive-loading engine for the OpenF1 API."""

__version__ = "0.1.0"
