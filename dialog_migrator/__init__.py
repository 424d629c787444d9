#!/usr/bin/env python3
"""
Conversation-by-conversation message migration tool
"""

__version__ = "0.1.0"

from dialog_migrator.core.config import MigrationConfig, load_config

# Import the main classes and functions for easier access
from dialog_migrator.core.orchestrator import (
    MigrationOptions,
    MigrationOrchestrator,
    MigrationOutcome,
)
from dialog_migrator.core.progress import load_progress, save_progress
from dialog_migrator.core.report import generate_report
from dialog_migrator.services.memory_client import InMemoryClient
from dialog_migrator.services.rate_limiter import RateLimiter, with_rate_limit_retry
