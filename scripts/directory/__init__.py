"""Command-line scripts for Active Directory queries."""
