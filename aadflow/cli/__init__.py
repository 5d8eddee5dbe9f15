"""Command line interface for aadflow."""
