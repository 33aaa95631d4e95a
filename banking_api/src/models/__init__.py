"""Data models for the FastAPI service.

This package contains SQLAlchemy table definitions and Pydantic models for
request/response validation and domain records.
"""
