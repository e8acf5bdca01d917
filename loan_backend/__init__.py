"""
Backend package for the loan tracker.

This package provides a FastAPI application over a document store
(MongoDB, SQLAlchemy or in-memory) that the client uses to read the full
dataset and push batched updates.
"""
