"""
MyYDH CRUD API.

REST service exposing patient contact preferences and clinical document
metadata from a SQL Server or PostgreSQL database.
"""

__version__ = "1.0.0"
