from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from chunk_format import (
    AIR,
    BLOCKS_PER_SECTION,
    EDGE_LENGTH,
    SUBCHUNK_EDGE_LENGTH,
    Chunk,
    SubChunk,
    block_index,
)


@dataclass(frozen=True)
class NoiseConfig:
    octaves: int = 4
    lacunarity: float = 2.0
    gain: float = 0.5
    base_freq: float = 0.01
    amplitude: float = 24.0
    base_height: int = 64
    sea_level: int = 62
    min_y: int = 0
    max_y: int = 255


class TerrainGenerator:
    """Seeded value-noise terrain: stone under dirt, grass or sand on top, water up to sea level."""

    def __init__(self, seed: int, cfg: NoiseConfig | None = None) -> None:
        self.seed = int(seed)
        self.cfg = cfg or NoiseConfig()

    @staticmethod
    def _fade(t: np.ndarray) -> np.ndarray:
        # smootherstep
        return t * t * t * (t * (t * 6 - 15) + 10)

    def _hash(self, xi: np.ndarray, zi: np.ndarray) -> np.ndarray:
        # integer hash of lattice points -> [0,1)
        x = (xi.astype(np.uint32) * np.uint32(374761393)) ^ (zi.astype(np.uint32) * np.uint32(668265263)) ^ np.uint32(self.seed & 0xFFFFFFFF)
        x ^= (x >> np.uint32(13))
        x *= np.uint32(1274126177)
        x ^= (x >> np.uint32(16))
        return x.astype(np.float64) / float(2**32)

    def _noise(self, x: np.ndarray, z: np.ndarray) -> np.ndarray:
        xi0 = np.floor(x).astype(np.int64)
        zi0 = np.floor(z).astype(np.int64)
        u = self._fade(x - xi0)
        v = self._fade(z - zi0)

        a = self._hash(xi0, zi0)
        b = self._hash(xi0 + 1, zi0)
        c = self._hash(xi0, zi0 + 1)
        d = self._hash(xi0 + 1, zi0 + 1)

        ab = a + (b - a) * u
        cd = c + (d - c) * u
        return ab + (cd - ab) * v

    def heights(self, chunk_x: int, chunk_z: int) -> np.ndarray:
        """Surface heights of a chunk, indexed [x, z]"""
        cfg = self.cfg
        local = np.arange(EDGE_LENGTH, dtype=np.float64)
        x, z = np.meshgrid(chunk_x * EDGE_LENGTH + local, chunk_z * EDGE_LENGTH + local, indexing="ij")

        freq = cfg.base_freq
        amp = 1.0
        total = np.zeros_like(x)
        norm = 0.0
        for _ in range(cfg.octaves):
            total += (self._noise(x * freq, z * freq) * 2.0 - 1.0) * amp
            norm += amp
            freq *= cfg.lacunarity
            amp *= cfg.gain
        total /= max(norm, 1e-9)

        heights = np.round(cfg.base_height + total * cfg.amplitude).astype(np.int64)
        return np.clip(heights, cfg.min_y, cfg.max_y)

    def block_at(self, y: int, height: int) -> str:
        cfg = self.cfg
        if y > height:
            return "Water" if y <= cfg.sea_level else AIR
        if y == height:
            return "Sand" if height <= cfg.sea_level + 1 else "Grass"
        if y >= height - 3:
            return "Dirt"
        return "Stone"

    def generate_chunk(self, chunk_x: int, chunk_z: int) -> Chunk:
        cfg = self.cfg
        heights = self.heights(chunk_x, chunk_z)
        top = max(int(heights.max()), cfg.sea_level)

        sub_chunks = {}
        for index in range(cfg.min_y // SUBCHUNK_EDGE_LENGTH, top // SUBCHUNK_EDGE_LENGTH + 1):
            names = [AIR] * BLOCKS_PER_SECTION
            for dy in range(SUBCHUNK_EDGE_LENGTH):
                y = index * SUBCHUNK_EDGE_LENGTH + dy
                if y < cfg.min_y:
                    continue
                for z in range(EDGE_LENGTH):
                    for x in range(EDGE_LENGTH):
                        names[block_index(x, dy, z)] = self.block_at(y, int(heights[x, z]))
            sub_chunks[index] = SubChunk.from_names(names)
        return Chunk(sub_chunks)
