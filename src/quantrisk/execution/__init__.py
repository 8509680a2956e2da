"""Execution friction models."""
