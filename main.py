#!/usr/bin/env python3
"""
Main launcher for the Parley voice agent.

Simple entry point that starts the assistant CLI.
"""

from assistant import run

if __name__ == "__main__":
    run()
