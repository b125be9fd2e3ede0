"""
HTTP layer: route groups, dependencies, serialization and error handlers.
"""
