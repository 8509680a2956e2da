"""Event-driven backtesting."""
