"""Obsy insight generation service."""
