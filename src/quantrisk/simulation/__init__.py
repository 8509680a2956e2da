"""Scenario models and Monte Carlo simulation."""
