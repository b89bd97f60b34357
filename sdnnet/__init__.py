"""Cluster network parsing and validation, egress DNS tracking and egress IP tracking."""

__version__ = "0.1.0"