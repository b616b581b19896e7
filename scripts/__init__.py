"""
Scripts package for Directory Query.

This package contains command-line scripts organized by functionality.

Subpackages:
- directory: Scripts for querying Active Directory
"""

__version__ = "0.1.0"
