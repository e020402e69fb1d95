"""Configuration loading, defaults and validation."""
