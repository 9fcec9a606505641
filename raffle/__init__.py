"""Automated VRF raffle service."""
