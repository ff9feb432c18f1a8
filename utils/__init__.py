"""Shared utilities: logging, datetime helpers, validation and exceptions."""
