"""Command-line interface for worksync."""
