"""Backend package for the Boreal CRM contact dedupe service.

This package holds the DB models, the repository layer, the duplicate
detection and merge pipelines, and the FastAPI app.
"""
