"""Raffle state machine, event store and upkeep operator."""
