#!/usr/bin/env python3
"""
Renders a region of chunks into a single top-down map image, a few chunks per tick
"""
import argparse
import logging
import sys
from concurrent.futures import Future
from dataclasses import dataclass

from PIL import Image

from chunk_format import EDGE_LENGTH, MIN_SUBCHUNK_INDEX, MAX_SUBCHUNK_INDEX
from map_palette import MapColorPalette
from region_world import RegionWorld
from render_chunk import column_colors, ElevationShader, ImageCompositor
from scheduler import TickScheduler
from terrain_generator import TerrainGenerator

logger = logging.getLogger(__name__)

DEFAULT_CHUNKS_PER_TICK = 16
DEFAULT_CHUNK_LOADS_PER_TICK = 8
DEFAULT_CHUNK_GENS_PER_TICK = 2


@dataclass(frozen=True)
class TickLimit:
    """How many of something may happen before the scan waits for the next tick"""
    enabled: bool
    threshold: int = 0

    def __post_init__(self):
        if self.enabled and self.threshold < 1:
            raise ValueError(f"per-tick limit must be at least 1, got {self.threshold}")
        if not self.enabled and self.threshold != 0:
            raise ValueError("a disabled limit has no threshold")

    @classmethod
    def per_tick(cls, threshold):
        return cls(True, threshold)

    @classmethod
    def disabled(cls):
        return cls(False)

    def reached(self, count):
        return self.enabled and count > 0 and count % self.threshold == 0


# scan states
NEXT = "next"
ACQUIRE = "acquire"
EMIT = "emit"
THROTTLE = "throttle"
DONE = "done"


def check_region(x1, z1, x2, z2):
    if x1 > x2:
        raise ValueError(f"x1 ({x1}) must be <= x2 ({x2})")
    if z1 > z2:
        raise ValueError(f"z1 ({z1}) must be <= z2 ({z2})")


class RegionScan:
    """
    Walks the chunks of a region one state at a time and hands every colored
    block to sink(x, y, z, color), x and z relative to the region origin.

    The scan waits in two places only: for a chunk generation to complete and
    for the next tick once a per-tick limit is reached. Either way the scan
    continues from a callback, and `future` is completed with `result` when the
    scan is done.
    """

    def __init__(self, renderer, world, x1, z1, x2, z2, sink, result=None):
        self.renderer = renderer
        self.world = world
        self.x1, self.z1, self.x2, self.z2 = x1, z1, x2, z2
        self.sink = sink
        self.result = result
        self.future = Future()

        self.state = ACQUIRE
        self.x0 = x1
        self.z0 = z1
        self.ax = 0
        self.az = 0
        self.chunk = None
        self.n_chunks = 0
        self.n_chunk_loads = 0
        self.n_chunk_gens = 0

        self.chunks_rendered = 0
        self.chunks_skipped = 0
        self.sleeps = 0

        self._steps = {
            NEXT: self._next,
            ACQUIRE: self._acquire,
            EMIT: self._emit,
            THROTTLE: self._throttle,
        }
        self._running = False
        self._waiting = False

    def start(self):
        self._run()
        return self.future

    def _run(self):
        # callbacks fired from inside a step just flip _waiting back and return here
        if self._running:
            return
        self._running = True
        try:
            while not self._waiting and self.state != DONE:
                if self.future.cancelled():
                    logger.debug("Scan abandoned at chunk (%d, %d)", self.x0, self.z0)
                    self.state = DONE
                    break
                self._steps[self.state]()
        except Exception as e:
            self.state = DONE
            if not self.future.done():
                self.future.set_exception(e)
            return
        finally:
            self._running = False

        if self.state == DONE and not self.future.done():
            logger.debug("Scan done: %d chunks rendered, %d skipped, %d sleeps",
                         self.chunks_rendered, self.chunks_skipped, self.sleeps)
            self.future.set_result(self.result)

    def _resume(self, state):
        self._waiting = False
        self.state = state
        self._run()

    def _next(self):
        """select coordinates for the next chunk"""
        self.z0 += 1
        if self.z0 <= self.z2:
            self.az += EDGE_LENGTH
            self.state = ACQUIRE
            return
        self.z0 = self.z1
        self.az = 0
        self.x0 += 1
        if self.x0 <= self.x2:
            self.ax += EDGE_LENGTH
            self.state = ACQUIRE
            return
        self.state = DONE

    def _acquire(self):
        """read current chunk, loading or generating it if allowed"""
        if not self.world.is_loaded():
            logger.info("World unloaded, stopping at chunk (%d, %d)", self.x0, self.z0)
            self.state = DONE
            return

        chunk = self.world.get_chunk(self.x0, self.z0)
        if chunk is None and self.renderer.chunk_loads_per_tick.enabled:
            chunk = self.world.load_chunk(self.x0, self.z0)
            if chunk is not None:
                self.n_chunk_loads += 1
        if chunk is None and self.renderer.chunk_gens_per_tick.enabled:
            self._waiting = True
            self.state = ACQUIRE
            generation = self.world.request_chunk_population(self.x0, self.z0)
            generation.add_done_callback(self._on_generated)
            return
        self._acquired(chunk)

    def _on_generated(self, generation):
        chunk = None
        if generation.cancelled():
            logger.debug("Generation of chunk (%d, %d) was cancelled", self.x0, self.z0)
        elif generation.exception() is not None:
            logger.debug("Generation of chunk (%d, %d) failed: %r",
                         self.x0, self.z0, generation.exception())
        else:
            chunk = generation.result()
        if chunk is not None:
            self.n_chunk_gens += 1
        self._acquired(chunk)
        self._resume(self.state)

    def _acquired(self, chunk):
        if chunk is None:
            self.chunks_skipped += 1
            self.state = NEXT
            return
        self.n_chunks += 1
        self.chunk = chunk
        self.state = EMIT

    def _emit(self):
        """compute colors for current chunk"""
        chunk, self.chunk = self.chunk, None
        for dx, y, dz, color in self.renderer.colors(chunk):
            self.sink(self.ax + dx, y, self.az + dz, color)
        self.chunks_rendered += 1
        self.state = THROTTLE

    def _throttle(self):
        """evaluate sleeping condition (sleep if necessary)"""
        renderer = self.renderer
        sleep = (renderer.chunks_per_tick.reached(self.n_chunks)
                 or renderer.chunk_loads_per_tick.reached(self.n_chunk_loads)
                 or renderer.chunk_gens_per_tick.reached(self.n_chunk_gens))
        self.state = NEXT
        if sleep:
            self.n_chunks = 0
            self.n_chunk_loads = 0
            self.n_chunk_gens = 0
            self.sleeps += 1
            self._waiting = True
            renderer.scheduler.schedule_delayed_task(lambda: self._resume(NEXT), 1)


class MapRender:
    """
    Renders regions of a world into map images.

    The world is read without blocking the host: at most chunks_per_tick chunks
    are processed per tick, unloaded chunks are read from disk at most
    chunk_loads_per_tick per tick and missing chunks are generated at most
    chunk_gens_per_tick per tick.

    World interface used:
        is_loaded() -> bool
        get_chunk(x, z) -> chunk or None (resident chunks only)
        load_chunk(x, z) -> chunk or None
        request_chunk_population(x, z) -> Future of chunk or None
    The scheduler only needs schedule_delayed_task(callback, ticks). Futures
    and scheduled callbacks have to complete on the thread driving the scan.
    """

    def __init__(self, scheduler, palette, chunks_per_tick, chunk_loads_per_tick,
                 chunk_gens_per_tick, min_subchunk_index=MIN_SUBCHUNK_INDEX,
                 max_subchunk_index=MAX_SUBCHUNK_INDEX):
        """
        Args:
            scheduler: host scheduler used to wait for the next tick
            palette: MapColorPalette, colors used to represent blocks
            chunks_per_tick: number of chunks to process per tick
            chunk_loads_per_tick: TickLimit for chunks loaded from disk; disabled
                to never read unloaded chunks
            chunk_gens_per_tick: TickLimit for generated chunks; disabled to never
                generate chunks
            min_subchunk_index: sub-chunks below this index are not scanned
            max_subchunk_index: sub-chunks above this index are not scanned
        """
        for name, limit in (("chunk_loads_per_tick", chunk_loads_per_tick),
                            ("chunk_gens_per_tick", chunk_gens_per_tick)):
            if not isinstance(limit, TickLimit):
                raise TypeError(f"{name} must be a TickLimit, got {limit!r}")
        if min_subchunk_index > max_subchunk_index:
            raise ValueError(f"min_subchunk_index ({min_subchunk_index}) must be <= "
                             f"max_subchunk_index ({max_subchunk_index})")
        self.scheduler = scheduler
        self.palette = palette
        self.chunks_per_tick = TickLimit.per_tick(chunks_per_tick)
        self.chunk_loads_per_tick = chunk_loads_per_tick
        self.chunk_gens_per_tick = chunk_gens_per_tick
        self.min_subchunk_index = min_subchunk_index
        self.max_subchunk_index = max_subchunk_index

    @classmethod
    def create(cls, scheduler):
        return cls(scheduler, MapColorPalette.default(), DEFAULT_CHUNKS_PER_TICK,
                   TickLimit.per_tick(DEFAULT_CHUNK_LOADS_PER_TICK),
                   TickLimit.per_tick(DEFAULT_CHUNK_GENS_PER_TICK))

    def render(self, world, x1, z1, x2, z2):
        """
        Read the chunks from (x1, z1) to (x2, z2) inclusive and draw them into an
        RGBA image, one pixel per block column.

        Returns: Future completed with the PIL image. If the world unloads while
        rendering, the image holds whatever was drawn up to then.
        """
        check_region(x1, z1, x2, z2)
        width = (1 + (x2 - x1)) * EDGE_LENGTH
        height = (1 + (z2 - z1)) * EDGE_LENGTH
        logger.info("Rendering chunks (%d, %d) to (%d, %d) into %dx%d image",
                    x1, z1, x2, z2, width, height)

        compositor = ImageCompositor(width, height, self.palette.fallback)
        shader = ElevationShader()
        colors = self.palette.colors

        def draw(x, y, z, color):
            compositor.put(x, z, shader.shade(x, y, z, colors[color]))

        return RegionScan(self, world, x1, z1, x2, z2, draw, result=compositor.image).start()

    def read(self, world, x1, z1, x2, z2, sink):
        """
        Read the chunks from (x1, z1) to (x2, z2) inclusive and pass every visible
        block to sink(x, y, z, color): x in 0-W and z in 0-H relative to the region,
        y absolute, color an index into palette.colors.

        Blocks are pushed to sink as the scan reaches them instead of being
        returned as a sequence, since the scan spans many ticks.

        Returns: Future completed with None once the region has been read
        """
        check_region(x1, z1, x2, z2)
        return RegionScan(self, world, x1, z1, x2, z2, sink).start()

    def colors(self, chunk):
        """Visible blocks of one chunk, see render_chunk.column_colors()"""
        return column_colors(chunk, self.palette, self.min_subchunk_index, self.max_subchunk_index)


def _parse_args(argv):
    p = argparse.ArgumentParser(prog="render-map", description="Render a region of chunks into a top-down map image")
    p.add_argument("x1", type=int, help="first chunk X (inclusive)")
    p.add_argument("z1", type=int, help="first chunk Z (inclusive)")
    p.add_argument("x2", type=int, help="last chunk X (inclusive)")
    p.add_argument("z2", type=int, help="last chunk Z (inclusive)")
    p.add_argument("--world", required=True, help="directory holding <rx>.<rz>.region.bin files")
    p.add_argument("-o", "--output", help="output PNG path (default: map_<x1>_<z1>_to_<x2>_<z2>.png)")
    p.add_argument("--palette", help="palette JSON file (default: bundled map_palette.json)")
    p.add_argument("--chunks-per-tick", type=int, default=DEFAULT_CHUNKS_PER_TICK)
    p.add_argument("--chunk-loads-per-tick", type=int, default=DEFAULT_CHUNK_LOADS_PER_TICK)
    p.add_argument("--no-load", action="store_true", help="only draw chunks already resident (never read region files)")
    p.add_argument("--chunk-gens-per-tick", type=int, default=DEFAULT_CHUNK_GENS_PER_TICK)
    p.add_argument("--no-generate", action="store_true", help="never generate missing chunks")
    p.add_argument("--seed", type=int, help="generate missing chunks with this terrain seed")
    p.add_argument("--min-subchunk", type=int, default=MIN_SUBCHUNK_INDEX)
    p.add_argument("--max-subchunk", type=int, default=MAX_SUBCHUNK_INDEX)
    p.add_argument("--scale", type=int, default=1, help="pixels per block in the saved image")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return p.parse_args(argv)


def main(argv=None):
    args = _parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        check_region(args.x1, args.z1, args.x2, args.z2)
        loads = TickLimit.disabled() if args.no_load else TickLimit.per_tick(args.chunk_loads_per_tick)
        gens = TickLimit.disabled() if args.no_generate else TickLimit.per_tick(args.chunk_gens_per_tick)
        if args.scale < 1:
            raise ValueError(f"scale must be at least 1, got {args.scale}")
        palette = MapColorPalette.from_json(args.palette) if args.palette else MapColorPalette.default()
        scheduler = TickScheduler()
        renderer = MapRender(scheduler, palette, args.chunks_per_tick, loads, gens,
                             args.min_subchunk, args.max_subchunk)
    except ValueError as e:
        print(f"Error: {e}")
        return 2

    generator = TerrainGenerator(args.seed) if args.seed is not None else None
    world = RegionWorld(args.world, scheduler=scheduler, generator=generator)
    output = args.output or f"map_{args.x1}_{args.z1}_to_{args.x2}_{args.z2}.png"

    chunks_width = args.x2 - args.x1 + 1
    chunks_height = args.z2 - args.z1 + 1
    print(f"Rendering {chunks_width}x{chunks_height} chunks ({chunks_width * chunks_height} total)")
    print(f"Chunk range: ({args.x1}, {args.z1}) to ({args.x2}, {args.z2})")

    image = scheduler.run_until_complete(renderer.render(world, args.x1, args.z1, args.x2, args.z2))
    print(f"Rendered in {scheduler.current_tick} ticks")

    if args.scale > 1:
        image = image.resize((image.width * args.scale, image.height * args.scale), Image.Resampling.NEAREST)
    image.save(output)
    print(f"Saved to {output}")
    print(f"Image size: {image.width}x{image.height}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
