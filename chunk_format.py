"""
Chunk and sub-chunk storage: block palettes, packed section data and the BSON
chunk document stored in region files
"""
import io
import logging
import struct

logger = logging.getLogger(__name__)

EDGE_LENGTH = 16
SUBCHUNK_EDGE_LENGTH = 16
MIN_SUBCHUNK_INDEX = -4
MAX_SUBCHUNK_INDEX = 19
BLOCKS_PER_SECTION = EDGE_LENGTH * SUBCHUNK_EDGE_LENGTH * EDGE_LENGTH

AIR = "Empty"

PALETTE_EMPTY = 0
PALETTE_HALF_BYTE = 1
PALETTE_BYTE = 2
PALETTE_SHORT = 3

# bytes taken by the packed index array for each palette type
ARRAY_SIZES = {
    PALETTE_HALF_BYTE: BLOCKS_PER_SECTION // 2,
    PALETTE_BYTE: BLOCKS_PER_SECTION,
    PALETTE_SHORT: BLOCKS_PER_SECTION * 2,
}

SECTION_VERSION = 1


class ChunkFormatError(ValueError):
    """Raised when section or chunk data cannot be decoded"""


def block_index(x, y, z):
    """Flat index of a block inside a section (Y-Z-X ordering)"""
    return ((y & 15) << 8) | ((z & 15) << 4) | (x & 15)


def palette_type_for(palette_size):
    if palette_size == 0:
        return PALETTE_EMPTY
    if palette_size <= 16:
        return PALETTE_HALF_BYTE
    if palette_size <= 256:
        return PALETTE_BYTE
    if palette_size <= 65536:
        return PALETTE_SHORT
    raise ChunkFormatError(f"palette of {palette_size} entries does not fit a section")


class SubChunk:
    """
    One 16x16x16 slab of a chunk.

    Blocks are kept the way they are stored on disk: a palette mapping internal
    ids to block names and a packed array of internal ids.
    """

    def __init__(self, palette, blocks_array, palette_type):
        self.palette = palette
        self.blocks_array = blocks_array
        self.palette_type = palette_type

    @classmethod
    def empty(cls):
        return cls({}, None, PALETTE_EMPTY)

    @classmethod
    def from_names(cls, names):
        """
        Build a sub-chunk from block names given in flat index order

        Args:
            names: sequence of BLOCKS_PER_SECTION block names, see block_index()
        """
        if len(names) != BLOCKS_PER_SECTION:
            raise ValueError(f"expected {BLOCKS_PER_SECTION} blocks, got {len(names)}")
        ids = {}
        indices = []
        for name in names:
            internal_id = ids.get(name)
            if internal_id is None:
                internal_id = ids[name] = len(ids)
            indices.append(internal_id)
        if set(ids) == {AIR}:
            return cls.empty()

        palette = {internal_id: name for name, internal_id in ids.items()}
        palette_type = palette_type_for(len(palette))
        return cls(palette, pack_indices(indices, palette_type), palette_type)

    @classmethod
    def filled(cls, name):
        return cls.from_names([name] * BLOCKS_PER_SECTION)

    def is_empty_fast(self):
        """True when no block in this sub-chunk can be anything but air"""
        if self.blocks_array is None:
            return True
        return all(name == AIR for name in self.palette.values())

    def internal_id_at(self, flat_idx):
        if self.palette_type == PALETTE_HALF_BYTE:
            byte_idx = flat_idx // 2
            if flat_idx % 2 == 0:
                return self.blocks_array[byte_idx] & 0x0F
            return (self.blocks_array[byte_idx] >> 4) & 0x0F
        if self.palette_type == PALETTE_BYTE:
            return self.blocks_array[flat_idx]
        if self.palette_type == PALETTE_SHORT:
            return struct.unpack_from('>H', self.blocks_array, flat_idx * 2)[0]
        return None

    def get_block(self, x, y, z):
        """Get block name at local coordinates (0-15)"""
        if self.blocks_array is None:
            return AIR
        internal_id = self.internal_id_at(block_index(x, y, z))
        return self.palette.get(internal_id, AIR)

    def block_counts(self):
        """Number of blocks per internal id, as stored in the section palette"""
        counts = dict.fromkeys(self.palette, 0)
        if self.blocks_array is None:
            return counts
        for flat_idx in range(BLOCKS_PER_SECTION):
            internal_id = self.internal_id_at(flat_idx)
            if internal_id in counts:
                counts[internal_id] += 1
        return counts


def pack_indices(indices, palette_type):
    """Pack internal ids into the section array for the given palette type"""
    if palette_type == PALETTE_HALF_BYTE:
        packed = bytearray(ARRAY_SIZES[PALETTE_HALF_BYTE])
        for flat_idx, internal_id in enumerate(indices):
            if flat_idx % 2 == 0:
                packed[flat_idx // 2] |= internal_id & 0x0F
            else:
                packed[flat_idx // 2] |= (internal_id & 0x0F) << 4
        return bytes(packed)
    if palette_type == PALETTE_BYTE:
        return bytes(indices)
    if palette_type == PALETTE_SHORT:
        return struct.pack(f'>{len(indices)}H', *indices)
    raise ChunkFormatError(f"cannot pack indices for palette type {palette_type}")


def encode_section(sub_chunk, migration_count=0):
    """Serialize a sub-chunk into section bytes"""
    out = io.BytesIO()
    palette_type = sub_chunk.palette_type if sub_chunk.blocks_array is not None else PALETTE_EMPTY
    palette = sub_chunk.palette if palette_type != PALETTE_EMPTY else {}
    out.write(struct.pack('>IBH', migration_count, palette_type, len(palette)))

    counts = sub_chunk.block_counts()
    for internal_id, block_name in palette.items():
        if palette_type == PALETTE_SHORT:
            out.write(struct.pack('>H', internal_id))
        else:
            out.write(struct.pack('>B', internal_id))
        name = block_name.encode('utf-8')
        out.write(struct.pack('>H', len(name)))
        out.write(name)
        out.write(struct.pack('>H', min(counts.get(internal_id, 0), 0xFFFF)))

    if palette_type != PALETTE_EMPTY:
        out.write(sub_chunk.blocks_array)
    return out.getvalue()


def _read(reader, size):
    data = reader.read(size)
    if len(data) < size:
        raise ChunkFormatError(f"section truncated: wanted {size} bytes, got {len(data)}")
    return data


def decode_section(section_data):
    """Parse section bytes into a SubChunk"""
    reader = io.BytesIO(section_data)

    migration_count, palette_type, palette_size = struct.unpack('>IBH', _read(reader, 7))
    logger.debug("Section: migrations=%d palette_type=%d palette_size=%d",
                 migration_count, palette_type, palette_size)

    palette = {}
    for _ in range(palette_size):
        if palette_type == PALETTE_SHORT:
            internal_id = struct.unpack('>H', _read(reader, 2))[0]
        else:
            internal_id = struct.unpack('>B', _read(reader, 1))[0]
        name_length = struct.unpack('>H', _read(reader, 2))[0]
        try:
            block_name = _read(reader, name_length).decode('utf-8')
        except UnicodeDecodeError as e:
            raise ChunkFormatError(f"bad block name in palette: {e}") from e
        _count = struct.unpack('>H', _read(reader, 2))[0]
        palette[internal_id] = block_name

    if palette_type == PALETTE_EMPTY:
        return SubChunk.empty()
    if palette_type not in ARRAY_SIZES:
        raise ChunkFormatError(f"unknown palette type {palette_type}")

    blocks_array = _read(reader, ARRAY_SIZES[palette_type])
    return SubChunk(palette, blocks_array, palette_type)


class Chunk:
    """A 16x16 column of sub-chunks, addressed by sub-chunk index"""

    def __init__(self, sub_chunks=None):
        self.sub_chunks = dict(sub_chunks or {})

    def get_sub_chunk(self, index):
        sub_chunk = self.sub_chunks.get(index)
        if sub_chunk is None:
            return SubChunk.empty()
        return sub_chunk

    def get_block(self, x, y, z):
        """Get block name at chunk-local x/z and absolute y"""
        return self.get_sub_chunk(y >> 4).get_block(x, y & 15, z)


def encode_chunk(chunk):
    """Build the BSON-ready chunk document"""
    sections = []
    for index in sorted(chunk.sub_chunks):
        sub_chunk = chunk.sub_chunks[index]
        if sub_chunk.is_empty_fast():
            continue
        sections.append({
            "Index": index,
            "Components": {
                "Block": {"Version": SECTION_VERSION, "Data": encode_section(sub_chunk)}
            },
        })
    return {"Components": {"ChunkColumn": {"Sections": sections}}}


def decode_chunk(document):
    """
    Turn a decoded chunk document into a Chunk

    We are interested in `Components.ChunkColumn.Sections`; each section
    carries its sub-chunk index and its block data.
    """
    try:
        sections = document["Components"]["ChunkColumn"]["Sections"]
    except (KeyError, TypeError) as e:
        raise ChunkFormatError(f"chunk document has no sections: {e!r}") from e

    sub_chunks = {}
    for section in sections:
        components = section.get("Components", {})
        if "Block" not in components:
            continue
        if "Index" not in section:
            raise ChunkFormatError("section without an index")
        block_version = components["Block"].get("Version")
        if block_version != SECTION_VERSION:
            logger.debug("Section %s has block version %s", section.get("Index"), block_version)
        sub_chunks[int(section["Index"])] = decode_section(bytes(components["Block"]["Data"]))
    return Chunk(sub_chunks)
