"""
Minimal tick loop standing in for a game server's scheduler when rendering offline
"""
import heapq
import itertools
import logging

logger = logging.getLogger(__name__)


class TickScheduler:
    """
    Runs callbacks a number of ticks in the future.

    Nothing runs until tick() is called; tasks due at the same tick run in the
    order they were scheduled. Tasks scheduled while a tick is running are due
    at a later tick, never the current one.
    """

    def __init__(self):
        self.current_tick = 0
        self._tasks = []
        self._sequence = itertools.count()

    def schedule_delayed_task(self, task, delay):
        if delay < 1:
            raise ValueError(f"delay must be at least 1 tick, got {delay}")
        heapq.heappush(self._tasks, (self.current_tick + delay, next(self._sequence), task))

    def pending(self):
        return len(self._tasks)

    def tick(self):
        """
        Run every task due at the next tick

        A failing task does not hold back the others due at the same tick; the
        first failure is raised once they have all run.

        Returns: number of tasks run
        """
        self.current_tick += 1
        ran = 0
        error = None
        while self._tasks and self._tasks[0][0] <= self.current_tick:
            _, _, task = heapq.heappop(self._tasks)
            ran += 1
            try:
                task()
            except Exception as e:
                logger.error("Task failed at tick %d: %s", self.current_tick, e)
                if error is None:
                    error = e
        if error is not None:
            raise error
        return ran

    def run_until_complete(self, future, max_ticks=None):
        """
        Tick until future is done and return its result

        Args:
            future: concurrent.futures.Future completed by scheduled work
            max_ticks: give up with TimeoutError after this many ticks
        """
        start = self.current_tick
        while not future.done():
            if max_ticks is not None and self.current_tick - start >= max_ticks:
                raise TimeoutError(f"not done after {max_ticks} ticks")
            if not self._tasks:
                raise RuntimeError("future is not done and nothing is scheduled")
            self.tick()
        logger.debug("Completed after %d ticks", self.current_tick - start)
        return future.result()
