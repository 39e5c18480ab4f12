"""Dataset handles and the overview registry.

This package exposes the narrow interfaces the overview algorithms work
through: a dataset handle (PostGIS or in-memory) answering extent, count,
statistics and materialization requests, and a registry enumerating and
dropping the overview tables of a dataset by naming convention.

Example:
    >>> from overviews.db import database
    >>> registry = database.get_overview_registry(settings)
    >>> [level.z for level in registry.overviews("cities")]
"""
