"""
FastAPI routers for the import pipeline.

Each module covers one resource: import submission, job control and
category reconciliation.
"""
