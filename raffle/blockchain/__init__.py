"""Coordinator mock, payout ledgers and chain client."""
