"""Network platform implementations."""
