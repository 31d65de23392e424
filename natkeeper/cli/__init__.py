"""Command line interface for natkeeper."""
