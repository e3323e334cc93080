"""Service layer for the billing back-office."""
