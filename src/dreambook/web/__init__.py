"""Web interface for dreambook."""
