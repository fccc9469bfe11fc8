"""Predictive risk scoring module."""

from .scorer import PredictiveScorer, RiskScore, noisy_or, z_component

__all__ = ["PredictiveScorer", "RiskScore", "noisy_or", "z_component"]
