"""Entry point: python -m maas <auth|mcp|config> ..."""

from __future__ import annotations

from maas.cli import main

if __name__ == "__main__":
    main()
