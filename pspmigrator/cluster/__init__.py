"""Cluster access for pods and PodSecurityPolicies."""

from .accessor import KubectlAccessor

__all__ = ["KubectlAccessor"]
