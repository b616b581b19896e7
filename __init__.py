"""
Directory Query
===============

Paged, range-resolving searches against Active Directory.

This package provides an adapter, a facade and supporting models for:
- Paged searches with the simple paged results control
- Full retrieval of ranged multi-valued attributes (member, memberOf, ...)
- Typed attribute values (FILETIME, SIDs, GUIDs, certificates)

For more information, see the README.md file.
"""

__version__ = "0.1.0"
