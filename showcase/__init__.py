"""
Backend package for the showcase portal.

This package provides the FastAPI application for projects and users plus
the media subsystem: a blob store, the reference ledger that records which
document fields point at which blob, and the reclaimer that deletes blobs
once nothing references them.
"""
