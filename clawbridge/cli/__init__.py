"""Command-line interface for clawbridge."""
