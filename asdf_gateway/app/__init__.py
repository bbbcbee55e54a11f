"""FastAPI application package for the ASDF gateway."""
