"""
Entry point for running the relay as a module.

Usage:
    python -m bridge_relay
"""

from bridge_relay.cli import main

if __name__ == "__main__":
    main()
