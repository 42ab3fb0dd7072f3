"""Pydantic models for billing records and Stripe events."""
