"""
Background Jobs for Team Consensus.

This module contains scheduled and background jobs:
- expiry_cron: periodic sweep of overdue subjects
"""

from .expiry_cron import run_expiry_job

__all__ = ["run_expiry_job"]
