"""Garage appointment scheduling engine."""
