"""Walk-forward scheduling."""
