"""Typer-based command-line interface for the provisioner."""
