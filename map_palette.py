"""
Map colors for blocks, loaded from map_palette.json
"""
import json
from pathlib import Path
from types import MappingProxyType

PALETTE_PATH = Path(__file__).parent / "map_palette.json"

# Cache for the shipped palette
_default_palette = None


def hex_to_rgb(hex_color):
    """Convert hex color string to RGB tuple"""
    if not hex_color or not hex_color.startswith('#'):
        return None
    hex_color = hex_color.lstrip('#')
    if len(hex_color) == 3:
        hex_color = ''.join([c*2 for c in hex_color])
    if len(hex_color) != 6:
        return None
    try:
        return tuple(int(hex_color[i:i+2], 16) for i in (0, 2, 4))
    except ValueError:
        return None


def _parse_color(entry, where):
    """["#rrggbb", opacity] -> (r, g, b, opacity)"""
    try:
        hex_color, opacity = entry
    except (TypeError, ValueError):
        raise ValueError(f"{where}: expected [hex, opacity], got {entry!r}") from None
    rgb = hex_to_rgb(hex_color)
    if rgb is None:
        raise ValueError(f"{where}: invalid hex color {hex_color!r}")
    if not isinstance(opacity, int) or not 0 <= opacity <= 255:
        raise ValueError(f"{where}: opacity must be an integer in 0-255, got {opacity!r}")
    return (*rgb, opacity)


class MapColorPalette:
    """
    Colors used to represent blocks on a map.

    `blocks` maps a block (material) to a color index, `colors` maps a color
    index to (r, g, b, opacity). An opacity of 255 is fully opaque; anything
    lower is translucent. Blocks with no entry are not drawn at all.
    """

    def __init__(self, blocks, colors, fallback):
        colors = tuple(tuple(color) for color in colors)
        for block, color in blocks.items():
            if not isinstance(color, int) or isinstance(color, bool):
                raise ValueError(f"block {block!r} has a color index that is not an integer: {color!r}")
            if not 0 <= color < len(colors):
                raise ValueError(f"block {block!r} refers to unknown color index {color}")
        self.blocks = MappingProxyType(dict(blocks))
        self.colors = colors
        self.fallback = tuple(fallback)

    @classmethod
    def from_json(cls, path):
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)

        colors = [_parse_color(entry, f"color {i}") for i, entry in enumerate(data["Colors"])]
        fallback = _parse_color(data["Fallback"], "fallback")
        return cls(data["Blocks"], colors, fallback)

    @classmethod
    def default(cls):
        """Load the palette shipped next to this module (cached)"""
        global _default_palette
        if _default_palette is None:
            _default_palette = cls.from_json(PALETTE_PATH)
        return _default_palette

    def color_of(self, block):
        return self.blocks.get(block)

    def rgba(self, color):
        return self.colors[color]

    def is_opaque(self, color):
        return self.colors[color][3] == 255
