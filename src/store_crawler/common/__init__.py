"""Shared configuration, models and helpers."""
