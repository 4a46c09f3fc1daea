#!/usr/bin/env python3
"""Entry point for running the reminder engine as a module."""

from reminder_engine.app import main

if __name__ == "__main__":
    main()
