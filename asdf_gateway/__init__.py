"""ASDF API gateway resilience layer."""

__version__ = "0.1.0"
