"""Application middleware (logging, caller identity)."""
