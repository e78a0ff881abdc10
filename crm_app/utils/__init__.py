"""Shared helpers for the contact application."""
