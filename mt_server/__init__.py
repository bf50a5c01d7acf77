"""
MobileTester server module.

FastAPI application exposing upload, job status, cancel and delete endpoints,
plus API-key authentication.
"""
