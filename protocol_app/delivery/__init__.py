"""Delivery handlers for lifecycle events (timer, display, webhooks, files)."""
