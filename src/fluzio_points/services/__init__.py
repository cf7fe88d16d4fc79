"""Domain services for the points settlement engine."""
