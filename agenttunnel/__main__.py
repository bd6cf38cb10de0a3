#!/usr/bin/env python3
"""
Entry point for running agenttunnel as a module.

This allows the package to be executed with:
    python -m agenttunnel
"""
from agenttunnel.cli import cli

if __name__ == "__main__":
    cli()
