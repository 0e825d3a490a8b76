"""School assessment grading and aggregation engine."""
