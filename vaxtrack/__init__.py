"""Vaccination schedule and notification engine."""
