"""Shared configuration, logging and helpers."""
