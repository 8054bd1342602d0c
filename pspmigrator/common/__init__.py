"""Shared types used across the analyzer, detector and cluster accessor."""
