"""Flask request middleware."""
