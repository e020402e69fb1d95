"""Run state models, lifecycle events and transition rules."""
