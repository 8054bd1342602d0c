"""Static analysis of PodSecurityPolicy objects."""

from .analyzer import PolicyAnalysis, analyze, mutating_field_names

__all__ = [
    "PolicyAnalysis",
    "analyze",
    "mutating_field_names",
]
