"""Command line entry points for the spike detector."""
