"""Overview pyramid algorithms.

Submodules:
    - xyz: Tile grid math for the Web Mercator pyramid.
    - density: Feature density sampling and reference zoom selection.
    - aggregation: Per-column aggregation rules for collapsed rows.
    - reduce: Grid clustering reduction and the strategy catalogue.
"""
