"""HTTP blueprints for the duty engine."""
