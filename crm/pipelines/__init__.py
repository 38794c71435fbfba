"""Pipelines for identity normalization, duplicate detection and merging.

Each step is callable on its own so it can be driven from the API or from
batch tooling.
"""
