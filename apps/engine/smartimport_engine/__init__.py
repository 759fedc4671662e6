"""Smart Import HTTP engine."""
