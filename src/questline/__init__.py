"""Questline: quest instance lifecycle and progression engine."""
