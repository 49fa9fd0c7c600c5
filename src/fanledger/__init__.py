"""Reconciles Stripe billing events with the fan subscription ledger."""

__version__ = "0.1.0"
