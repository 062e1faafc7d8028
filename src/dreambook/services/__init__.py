"""Service layer: sequence persistence and job management."""
