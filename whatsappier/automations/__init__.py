"""Automation templates, trigger normalization, matching and dispatch."""
