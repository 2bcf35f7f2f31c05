"""Aggregation and convergence detection."""
