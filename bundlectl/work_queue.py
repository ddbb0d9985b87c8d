"""
The WorkQueue hands Bundle keys to the worker threads. A key that is added
several times before a worker picks it up is delivered once, and a key is
never delivered to two workers at the same time. Failed keys are re-added
after an exponential backoff.
"""

# Standard
from typing import Dict, List, Optional, Set, Tuple
import random
import threading

# First Party
import alog

# Local
from . import config
from .threads import TimerThread

log = alog.use_channel("WRKQ")


class WorkQueue:
    """Rate limited, deduplicating queue of keys"""

    def __init__(  # pylint: disable=too-many-arguments
        self,
        timer_thread: Optional[TimerThread] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        max_retries: Optional[int] = None,
        jitter: Optional[float] = None,
    ):
        """
        Args:
            timer_thread:  Optional[TimerThread]
                The timer used to schedule delayed adds. One is created and
                started on first use if not given.
            base_delay:  Optional[float]
                Delay in seconds of the first retry
            max_delay:  Optional[float]
                Upper bound for the retry delay
            max_retries:  Optional[int]
                Number of rate limited adds before a key is dropped
            jitter:  Optional[float]
                Fraction of the delay added as random jitter
        """
        work_queue_config = config.work_queue
        self.base_delay = (
            base_delay if base_delay is not None else work_queue_config.base_delay_seconds
        )
        self.max_delay = max_delay if max_delay is not None else work_queue_config.max_delay_seconds
        self.max_retries = (
            max_retries if max_retries is not None else work_queue_config.max_retries
        )
        self.jitter = jitter if jitter is not None else work_queue_config.jitter

        self._timer_thread = timer_thread
        self._condition = threading.Condition()
        self._queue: List[str] = []
        # Keys waiting to be processed
        self._dirty: Set[str] = set()
        # Keys currently held by a worker
        self._processing: Set[str] = set()
        self._failures: Dict[str, int] = {}
        self._shutting_down = False

    ## Queue ###################################################################

    def add(self, key: str):
        """Mark a key as needing processing"""
        with self._condition:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            # Keys being processed are added back to the queue in done()
            if key in self._processing:
                log.debug3("Key %s is being processed, deferring", key)
                return
            self._queue.append(key)
            self._condition.notify()

    def get(self, timeout: Optional[float] = None) -> Tuple[Optional[str], bool]:
        """Block until a key is available

        Args:
            timeout:  Optional[float]
                Maximum seconds to wait. None waits forever.

        Returns:
            key:  Optional[str]
                The key to process, None if the queue is shutting down or the
                timeout expired
            shutdown:  bool
                True if the queue is shutting down
        """
        with self._condition:
            if not self._condition.wait_for(
                lambda: self._queue or self._shutting_down, timeout=timeout
            ):
                return None, False
            if not self._queue:
                return None, True
            key = self._queue.pop(0)
            self._processing.add(key)
            self._dirty.discard(key)
            return key, False

    def done(self, key: str):
        """Mark the processing of a key as finished. If the key was added while
        it was being processed it is queued again.
        """
        with self._condition:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._condition.notify()

    def shutdown(self):
        """Stop accepting keys and wake all waiting workers"""
        with self._condition:
            self._shutting_down = True
            self._condition.notify_all()
        if self._timer_thread is not None:
            self._timer_thread.stop_thread()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def __len__(self) -> int:
        with self._condition:
            return len(self._queue)

    ## Rate Limiting ###########################################################

    def add_rate_limited(self, key: str) -> bool:
        """Add a key after its backoff delay

        Returns:
            scheduled:  bool
                False if the key exceeded the retry limit and was dropped
        """
        with self._condition:
            failures = self._failures.get(key, 0)
            if failures >= self.max_retries:
                log.warning("Dropping key %s after %d retries", key, failures)
                self._failures.pop(key, None)
                return False
            self._failures[key] = failures + 1
        delay = self.backoff(failures)
        log.debug("Requeueing key %s in %.3fs (retry %d)", key, delay, failures + 1)
        self._get_timer().put_event(delay, self.add, key)
        return True

    def forget(self, key: str):
        """Reset the failure count of a key"""
        with self._condition:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._condition:
            return self._failures.get(key, 0)

    def backoff(self, failures: int) -> float:
        """The delay for a key that failed the given number of times"""
        # The exponent is capped so the float never overflows
        delay = min(self.base_delay * 2 ** min(failures, 64), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter * delay)
        return delay

    ## Implementation Details ##################################################

    def _get_timer(self) -> TimerThread:
        with self._condition:
            if self._timer_thread is None:
                self._timer_thread = TimerThread(name="work_queue_timer")
            if not self._timer_thread.is_alive() and not self._timer_thread.should_stop():
                self._timer_thread.start_thread()
            return self._timer_thread
