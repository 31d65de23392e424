"""Shared utilities for natkeeper."""
