"""Error aggregation and automated repair."""
