"""Admin API route modules."""
