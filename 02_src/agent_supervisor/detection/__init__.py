"""Anomaly detection module."""

from .detector import AnomalyDetector, Finding, find_dependency_loop, merge_findings

__all__ = ["AnomalyDetector", "Finding", "find_dependency_loop", "merge_findings"]
