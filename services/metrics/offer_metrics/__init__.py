"""Offer metrics service: derived sales metrics, session cache and change-feed reconciler."""
