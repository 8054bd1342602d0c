"""Diagnostics for migrating from PodSecurityPolicy to Pod Security Admission."""

__version__ = "0.1.0"
