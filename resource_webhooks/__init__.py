"""Webhook integration layer for a multi-tenant resource-booking backend."""

__version__ = "1.0.0"
