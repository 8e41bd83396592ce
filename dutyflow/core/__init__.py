"""Duty engine core primitives (exception hierarchy)."""
