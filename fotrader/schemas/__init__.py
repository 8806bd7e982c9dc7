"""Pydantic schemas for broker capability types and API payloads."""
