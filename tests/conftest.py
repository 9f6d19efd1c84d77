import pytest

from map_palette import MapColorPalette
from scheduler import TickScheduler
from tests.helpers import FALLBACK_RGBA, GLASS, GLASS_RGBA, STONE, STONE_RGBA, WATER, WATER_RGBA


@pytest.fixture
def palette() -> MapColorPalette:
    return MapColorPalette(
        {"Stone": STONE, "Water": WATER, "Glass": GLASS},
        [(0, 0, 0, 0), STONE_RGBA, WATER_RGBA, GLASS_RGBA],
        FALLBACK_RGBA,
    )


@pytest.fixture
def scheduler() -> TickScheduler:
    return TickScheduler()
