"""Overview pyramid engine for large vector datasets stored in PostGIS.

This package builds and manages multi-resolution "overviews": progressively
coarser, pre-aggregated copies of a dataset table, one per zoom level, so a
renderer can read an appropriately sized table instead of scanning the full
resolution data for every tile.

- Tile grid math over the EPSG:3857 (Web Mercator) power-of-two pyramid
- Feature density estimation by quadtree sampling of the dataset extent
- Reference zoom selection from the measured density and a pixel tolerance
- Per-column aggregation rules chosen by column type and cardinality
- Grid clustering reduction of point datasets into overview tables
- Registry of existing overview tables by naming convention

See the module sub-docstrings for details on each component.
"""
