"""Synchronise secondary Pi-hole v6 instances with a main instance."""

__version__ = "0.6.0"
