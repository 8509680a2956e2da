"""Portfolio construction and risk monitoring."""
