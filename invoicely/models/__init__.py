"""Pydantic models for billing, upload links and Gmail connections."""
