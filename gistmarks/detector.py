"""
Background detection of remote changes.

A ChangeDetector polls a RemoteStore for the version of one document and
calls back when it moves. It never raises out of its loop: store failures
and callback errors are logged and polling carries on.
"""
import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Optional

from gistmarks.clock import Clock, SystemClock
from gistmarks.constants import DEFAULT_POLL_INTERVAL_MS
from gistmarks.store import RemoteStore

logger = logging.getLogger(__name__)


class DetectorState(Enum):
    IDLE = "idle"
    RUNNING = "running"


class ChangeDetector:
    """Poll a remote document's version and report changes.

    Args:
        store: Store to poll
        remote_id: Document to watch
        on_change: Called with the new version, once per observed change;
            may return an awaitable
        interval_ms: Delay between checks
        guard: Optional predicate; while it returns True changes are
            recorded but not reported
        clock: Clock used for waiting (SystemClock by default)
    """

    def __init__(
        self,
        store: RemoteStore,
        remote_id: str,
        on_change: Callable[[str], Any],
        interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        guard: Optional[Callable[[], bool]] = None,
        clock: Optional[Clock] = None
    ):
        self.store = store
        self.remote_id = remote_id
        self.on_change = on_change
        self.interval_ms = interval_ms
        self.guard = guard
        self.clock = clock or SystemClock()

        self._state = DetectorState.IDLE
        self._version: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._checking = False
        # Bumped by every start/stop so work from an earlier run can tell it is stale
        self._generation = 0

    @property
    def state(self) -> DetectorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is DetectorState.RUNNING

    @property
    def version(self) -> Optional[str]:
        """Last version recorded for the watched document."""
        return self._version

    def _active(self, generation: int) -> bool:
        return self._state is DetectorState.RUNNING and generation == self._generation

    async def start(self, known_version: Optional[str] = None):
        """Begin polling. Does nothing if already running."""
        if self._state is DetectorState.RUNNING:
            return
        self._state = DetectorState.RUNNING
        self._generation += 1
        generation = self._generation

        if known_version is not None:
            self._version = known_version
        else:
            self._version = await self._probe()
            if not self._active(generation):
                return

        self._task = asyncio.create_task(self._run(generation))
        logger.info(f"Watching {self.remote_id} every {self.interval_ms}ms")

    def stop(self):
        """Stop polling. No notification is delivered once this returns."""
        if self._state is DetectorState.IDLE:
            return
        self._state = DetectorState.IDLE
        self._generation += 1
        if self._task is not None:
            self._task.cancel()
            self._task = None
        logger.info(f"Stopped watching {self.remote_id}")

    def acknowledge(self, version: Optional[str]):
        """Record a version the owner produced itself so it is not reported."""
        self._version = version

    async def _probe(self) -> Optional[str]:
        try:
            result = await self.store.get_version(self.remote_id)
        except Exception:
            logger.exception(f"Version probe for {self.remote_id} raised")
            return None
        if not result.ok:
            logger.warning(f"Version probe for {self.remote_id} failed: {result.error}")
            return None
        return result.value

    async def _run(self, generation: int):
        interval = self.interval_ms / 1000
        while self._active(generation):
            await self.clock.sleep(interval)
            if not self._active(generation):
                break
            try:
                await self.check()
            except Exception:
                logger.exception("Change check failed")

    async def check(self) -> bool:
        """Run one check now. Returns True if a change was reported.

        A check requested while another is still pending is skipped.
        """
        if self._state is not DetectorState.RUNNING:
            return False
        if self._checking:
            logger.debug(f"Check for {self.remote_id} still pending, skipping tick")
            return False

        generation = self._generation
        self._checking = True
        try:
            version = await self._probe()
            if version is None or not self._active(generation):
                return False
            if version == self._version:
                return False

            previous, self._version = self._version, version
            if previous is None:
                # First good probe after a failed start only sets the baseline
                return False

            if self._vetoed():
                logger.info(f"Change to {self.remote_id} recorded, notification suppressed")
                return False

            logger.info(f"Remote change detected for {self.remote_id}")
            try:
                outcome = self.on_change(version)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Change callback raised")
            return True
        finally:
            self._checking = False

    def _vetoed(self) -> bool:
        if self.guard is None:
            return False
        try:
            return bool(self.guard())
        except Exception:
            logger.exception("Change guard raised; suppressing notification")
            return True
