#!/usr/bin/env python3
"""
Main execution module for the conversation migration tool
"""

from dialog_migrator.cli.commands import main

if __name__ == "__main__":
    main()
