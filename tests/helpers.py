from concurrent.futures import Future
from typing import Dict, List, Optional, Tuple

from chunk_format import AIR, BLOCKS_PER_SECTION, Chunk, SubChunk, block_index
from render_map import MapRender, TickLimit

STONE_RGBA = (100, 150, 200, 255)
WATER_RGBA = (40, 40, 240, 128)
GLASS_RGBA = (200, 200, 250, 64)
FALLBACK_RGBA = (0, 0, 0, 0)

STONE = 1
WATER = 2
GLASS = 3


def make_chunk(blocks: Dict[Tuple[int, int, int], str]) -> Chunk:
    """Chunk from {(x, absolute y, z): block name}"""
    sections: Dict[int, List[str]] = {}
    for (x, y, z), name in blocks.items():
        names = sections.setdefault(y >> 4, [AIR] * BLOCKS_PER_SECTION)
        names[block_index(x, y & 15, z)] = name
    return Chunk({index: SubChunk.from_names(names) for index, names in sections.items()})


def flat_chunk(height: int, block: str = "Stone", top: Optional[str] = None) -> Chunk:
    """Every column filled with block from y=0 up to height, optionally capped with top"""
    blocks = {}
    for x in range(16):
        for z in range(16):
            for y in range(height + 1):
                blocks[(x, y, z)] = block
            if top is not None:
                blocks[(x, height + 1, z)] = top
    return make_chunk(blocks)


def make_renderer(
    scheduler,
    palette,
    chunks_per_tick: int = 16,
    loads: TickLimit = TickLimit.per_tick(8),
    gens: TickLimit = TickLimit.per_tick(2),
    min_subchunk_index: int = 0,
    max_subchunk_index: int = 3,
) -> MapRender:
    return MapRender(scheduler, palette, chunks_per_tick, loads, gens, min_subchunk_index, max_subchunk_index)


class FakeWorld:
    """In-memory world that records every call made to it"""

    def __init__(self, scheduler=None, resident=None, on_disk=None, generatable=None):
        self.scheduler = scheduler
        self.resident: Dict[Tuple[int, int], Chunk] = dict(resident or {})
        self.on_disk: Dict[Tuple[int, int], Chunk] = dict(on_disk or {})
        self.generatable: Dict[Tuple[int, int], object] = dict(generatable or {})
        self.loaded = True
        self.unload_after_reads: Optional[int] = None
        self.get_calls: List[Tuple[int, int]] = []
        self.load_calls: List[Tuple[int, int]] = []
        self.generate_calls: List[Tuple[int, int]] = []

    def is_loaded(self) -> bool:
        return self.loaded

    def get_chunk(self, x, z):
        self.get_calls.append((x, z))
        if self.unload_after_reads is not None and len(self.get_calls) >= self.unload_after_reads:
            self.loaded = False
        return self.resident.get((x, z))

    def load_chunk(self, x, z):
        self.load_calls.append((x, z))
        chunk = self.on_disk.get((x, z))
        if chunk is not None:
            self.resident[(x, z)] = chunk
        return chunk

    def request_chunk_population(self, x, z) -> Future:
        self.generate_calls.append((x, z))
        future: Future = Future()
        outcome = self.generatable.get((x, z))

        def complete():
            if isinstance(outcome, Exception):
                future.set_exception(outcome)
            else:
                future.set_result(outcome)

        if self.scheduler is None:
            complete()
        else:
            self.scheduler.schedule_delayed_task(complete, 1)
        return future


class EagerScheduler:
    """Runs delayed tasks right away, inside the call that schedules them"""

    def __init__(self):
        self.calls = 0

    def schedule_delayed_task(self, task, delay):
        self.calls += 1
        task()
