"""Command line interface for distros-core."""
