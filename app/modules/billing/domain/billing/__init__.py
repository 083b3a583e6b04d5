"""Dunning domain services."""
