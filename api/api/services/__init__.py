"""Billing services: Stripe gateway and billing operations."""
