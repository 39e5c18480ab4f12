"""API router subpackage for the overview service.

This package organizes REST endpoints exposing the overview engine to the
rendering and query layer. Each module exposes its own APIRouter for
composition in the application's main FastAPI instance.

Submodules:
    - overviews: Listing, dropping and building overview levels of a
      dataset, and choosing its reference zoom level.
    - tiles: Tile grid math (resolution and tile extents).
"""
