"""
Region files on disk: reading and writing chunks, and a world that serves
chunks from a directory of region files
"""
import logging
import struct
from concurrent.futures import Future
from pathlib import Path

import bson
import bson.errors
import compression.zstd as zstd

from chunk_format import ChunkFormatError, decode_chunk, encode_chunk

logger = logging.getLogger(__name__)

HEADER_LENGTH = 32
REGION_WIDTH_CHUNKS = 32
SEGMENT_SIZE = 4096
MAGIC = b"MapRenderRegion"
VERSION = 1

# the chunk location table sits right after the header, so segment 0 never holds a chunk
TABLE_LENGTH = REGION_WIDTH_CHUNKS * REGION_WIDTH_CHUNKS * 4


def region_coords(chunk_x, chunk_z):
    """Region holding a chunk, and the chunk's position inside that region"""
    return (
        chunk_x // REGION_WIDTH_CHUNKS,
        chunk_z // REGION_WIDTH_CHUNKS,
        chunk_x % REGION_WIDTH_CHUNKS,
        chunk_z % REGION_WIDTH_CHUNKS,
    )


def region_file_name(region_x, region_z):
    return f"{region_x}.{region_z}.region.bin"


def read_region_header(file):
    header = file.read(HEADER_LENGTH)
    if len(header) < HEADER_LENGTH:
        raise ChunkFormatError("region file too short for a header")
    magic, version, blob_count, segment_size = struct.unpack(">20sIII", header)
    magic = magic.rstrip(b"\0").decode("utf-8", errors="replace")
    logger.debug("Magic: %s", magic)
    logger.debug("Version: %d", version)
    logger.debug("Blob Count: %d", blob_count)
    logger.debug("Segment Size: %d", segment_size)
    if segment_size == 0:
        raise ChunkFormatError("region header has a segment size of 0")
    return magic, version, blob_count, segment_size


def read_chunk_blob(file, x, z, segment_size):
    """
    Reads the document of chunk (x, z) from an open region file

    :param file: file handle
    :param x: chunk x coordinate relative to region
    :param z: chunk z coordinate relative to region
    :param segment_size: segment size from the region header
    :return: decoded BSON document, or None if the chunk is not present
    """
    # offset into the chunk location table at beginning of file
    index_offset = (x + z * REGION_WIDTH_CHUNKS) * 4
    file.seek(HEADER_LENGTH + index_offset)
    segment = struct.unpack(">I", file.read(4))[0]
    if segment == 0:
        return None
    location = segment * segment_size + HEADER_LENGTH
    logger.debug("(X,Z)=>(%d,%d) Segment: %d, Offset: %d", x, z, segment, location)

    file.seek(location)
    uncompressed_size, compressed_size = struct.unpack(">II", file.read(8))
    logger.debug("Uncompressed Chunk Size (bytes): %d", uncompressed_size)
    logger.debug("Compressed Chunk Size (bytes): %d", compressed_size)
    compressed_bytes = file.read(compressed_size)
    if len(compressed_bytes) < compressed_size:
        raise ChunkFormatError(f"chunk ({x}, {z}) truncated")

    decompressed = zstd.decompress(compressed_bytes)
    return bson.decode(decompressed)


def write_region(path, chunks):
    """
    Write a whole region file

    Args:
        path: file to write
        chunks: mapping of (x, z) relative to the region (0-31) to Chunk
    """
    table = [0] * (REGION_WIDTH_CHUNKS * REGION_WIDTH_CHUNKS)
    blobs = bytearray()
    # segments count from the start of the table
    next_segment = TABLE_LENGTH // SEGMENT_SIZE

    for (x, z), chunk in sorted(chunks.items()):
        if not (0 <= x < REGION_WIDTH_CHUNKS and 0 <= z < REGION_WIDTH_CHUNKS):
            raise ValueError(f"chunk ({x}, {z}) is outside of a region")
        raw = bson.encode(encode_chunk(chunk))
        compressed = zstd.compress(raw)
        blob = struct.pack(">II", len(raw), len(compressed)) + compressed
        padding = -len(blob) % SEGMENT_SIZE
        table[x + z * REGION_WIDTH_CHUNKS] = next_segment
        blobs += blob + b"\0" * padding
        next_segment += (len(blob) + padding) // SEGMENT_SIZE

    with open(path, "wb") as f:
        f.write(struct.pack(">20sIII", MAGIC, VERSION, len(chunks), SEGMENT_SIZE))
        f.write(struct.pack(f">{len(table)}I", *table))
        f.write(blobs)
    logger.debug("Wrote %d chunks to %s", len(chunks), path)


class RegionWorld:
    """
    A world backed by a directory of region files.

    Chunks read from disk or generated stay resident until the world is unloaded.
    Generation runs on the scheduler, one tick after it was requested.
    """

    def __init__(self, directory, scheduler=None, generator=None):
        self.directory = Path(directory)
        self.scheduler = scheduler
        self.generator = generator
        self.chunks = {}
        self._loaded = True
        self.loads = 0
        self.generations = 0

    def is_loaded(self):
        return self._loaded

    def unload(self):
        self._loaded = False
        self.chunks.clear()

    def get_chunk(self, x, z):
        return self.chunks.get((x, z))

    def load_chunk(self, x, z):
        """Read chunk from its region file, None if it is missing or unreadable"""
        chunk = self.chunks.get((x, z))
        if chunk is not None:
            return chunk
        region_x, region_z, relative_x, relative_z = region_coords(x, z)
        region_path = self.directory / region_file_name(region_x, region_z)
        if not region_path.exists():
            logger.debug("Region file not found: %s", region_path)
            return None

        self.loads += 1
        try:
            with region_path.open("rb") as f:
                _, _, _, segment_size = read_region_header(f)
                document = read_chunk_blob(f, relative_x, relative_z, segment_size)
                if document is None:
                    logger.debug("Chunk (%d, %d) not present", x, z)
                    return None
                chunk = decode_chunk(document)
        except (ChunkFormatError, bson.errors.InvalidBSON, zstd.ZstdError, struct.error) as e:
            logger.warning("Skipping unreadable chunk (%d, %d) in %s: %s", x, z, region_path, e)
            return None

        self.chunks[(x, z)] = chunk
        return chunk

    def request_chunk_population(self, x, z):
        """
        Future of the generated chunk; completes with None if nothing can generate
        it, or with the generator's exception if generation failed
        """
        future = Future()
        if self.generator is None or self.scheduler is None:
            future.set_result(None)
            return future

        def generate():
            if not self._loaded:
                future.set_result(None)
                return
            chunk = self.chunks.get((x, z))
            if chunk is None:
                try:
                    chunk = self.generator.generate_chunk(x, z)
                except Exception as e:
                    logger.warning("Generation of chunk (%d, %d) failed: %s", x, z, e)
                    future.set_exception(e)
                    return
                self.generations += 1
                self.chunks[(x, z)] = chunk
            future.set_result(chunk)

        self.scheduler.schedule_delayed_task(generate, 1)
        return future

