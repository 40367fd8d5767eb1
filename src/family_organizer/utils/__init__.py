"""Utility modules for Family Organizer."""
