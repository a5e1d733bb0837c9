"""Context and export formatting."""
