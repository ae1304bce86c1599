"""Outbound billing provider integrations."""
