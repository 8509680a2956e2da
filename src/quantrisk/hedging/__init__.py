"""Dynamic hedging strategies."""
