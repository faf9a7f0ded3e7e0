"""Command-line sub-commands for bootrescue."""
