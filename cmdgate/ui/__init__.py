"""Terminal rendering for the cmdgate CLI."""
