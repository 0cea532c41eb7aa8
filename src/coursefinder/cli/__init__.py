"""
CLI Module - Command-line interface for CourseFinder.
=====================================================

Usage:
    coursefinder --help
    coursefinder rebuild
    coursefinder search "programming fundamentals"
    coursefinder course COMP-1020
"""

from coursefinder.cli.main import app, cli

__all__ = ["app", "cli"]
