"""
Per-chunk map rendering: column scanning, elevation shading and pixel compositing
"""
from PIL import Image

from chunk_format import EDGE_LENGTH, SUBCHUNK_EDGE_LENGTH

# A column scan gives up after this many translucent blocks without finding an
# opaque one. The deeper blocks are never looked at.
MAX_TRANSLUCENT_LAYERS = 15

# Brightness modifiers for columns lying below their north / north-west neighbors
SHADE_DEEP = 0.5294
SHADE_PARTIAL = 0.7058
SHADE_LIGHT = 0.8627


def column_colors(chunk, palette, min_subchunk_index, max_subchunk_index):
    """
    Reads blocks at every column (XZ) of the chunk. A column scan terminates when
    a block with a color opacity of 255 is encountered. Blocks are returned from
    BOTTOM to TOP, columns in X-major order (Z varies fastest).

    Args:
        chunk: the chunk to read colors from
        palette: MapColorPalette used to look up block colors
        min_subchunk_index: sub-chunks below this index are not scanned
        max_subchunk_index: sub-chunks above this index are not scanned

    Yields: (x (0-15), y (absolute), z (0-15), color index)
    """
    sub_chunks = []
    for index in range(max_subchunk_index, min_subchunk_index - 1, -1):
        sub_chunk = chunk.get_sub_chunk(index)
        if not sub_chunk.is_empty_fast():
            sub_chunks.append((index, sub_chunk))
    for x in range(EDGE_LENGTH):
        for z in range(EDGE_LENGTH):
            found = _scan_column(sub_chunks, palette, x, z)
            yield from reversed(found)


def _scan_column(sub_chunks, palette, x, z):
    found = []
    for index, sub_chunk in sub_chunks:
        yo = index * SUBCHUNK_EDGE_LENGTH
        for dy in range(SUBCHUNK_EDGE_LENGTH - 1, -1, -1):
            color = palette.color_of(sub_chunk.get_block(x, dy, z))
            if color is None:
                continue
            found.append((x, yo + dy, z, color))
            if palette.rgba(color)[3] == 255:
                return found
            if len(found) == MAX_TRANSLUCENT_LAYERS:
                # no solid block under 15 translucent ones, draw what we have
                return found
    return found


def shading_modifier(y, north, north_west):
    """
    Brightness modifier for an opaque column at height y, given the heights of
    its north (z - 1) and north-west (x - 1, z - 1) neighbors.

    Returns: multiplier, or None if the column is left as is
    """
    if north > y and north_west > y:
        return SHADE_DEEP
    if north > y and north_west <= y:
        return SHADE_PARTIAL
    if north >= y or north_west >= y:
        return SHADE_LIGHT
    return None


class ElevationShader:
    """
    Darkens opaque columns that sit below already scanned neighbors.

    Columns have to be fed in scan order (X outer, Z inner) so that the north
    and north-west neighbors of a column are known by the time it arrives.
    """

    def __init__(self):
        self.elevation = {}

    def shade(self, x, y, z, rgba):
        r, g, b, a = rgba
        if a != 255:
            return rgba

        self.elevation[(x, z)] = y
        north = self.elevation.get((x, z - 1))
        north_west = self.elevation.get((x - 1, z - 1))
        if north is None or north_west is None:
            return rgba

        modifier = shading_modifier(y, north, north_west)
        if modifier is None:
            return rgba
        return (int(r * modifier), int(g * modifier), int(b * modifier), a)


def to_alpha(opacity):
    """
    Map a palette opacity (0-255) to an image alpha (0-255).

    Alpha is kept at 7-bit precision: opacity is halved first, so 255 stays
    fully opaque and the rest lands on the 128 steps of a 0-127 alpha scale.
    """
    return ((opacity >> 1) * 255) // 127


def blend_over(dst, src):
    """Composite RGBA color src over dst (both with 0-255 alpha)"""
    sr, sg, sb, sa = src
    if sa == 255:
        return src
    if sa == 0:
        return dst
    dr, dg, db, da = dst
    da_weight = da * (255 - sa) // 255
    out_a = sa + da_weight
    if out_a == 0:
        return (0, 0, 0, 0)
    return (
        (sr * sa + dr * da_weight) // out_a,
        (sg * sa + dg * da_weight) // out_a,
        (sb * sa + db * da_weight) // out_a,
        out_a,
    )


class ImageCompositor:
    """RGBA map image filled with the palette fallback color, blended pixel by pixel"""

    def __init__(self, width, height, fallback):
        r, g, b, a = fallback
        self.image = Image.new('RGBA', (width, height), (r, g, b, to_alpha(a)))
        self.pixels = self.image.load()

    def put(self, x, z, rgba):
        r, g, b, a = rgba
        self.pixels[x, z] = blend_over(self.pixels[x, z], (r, g, b, to_alpha(a)))
