"""Service layer shared by the HTTP routes."""
