"""
The TimerThread is a helper class used to run scheduled events
"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from heapq import heappop, heappush
from typing import Any, Callable, Dict, List, Optional, Union
import threading

# First Party
import alog

# Local
from .base import ThreadBase

log = alog.use_channel("TMRTHRD")

# Shortest wait between two checks of the heap
MIN_SLEEP_TIME = 0.001


@dataclass(order=True)
class TimerEvent:
    """An item in the timer heap. Time is the only comparable field"""

    time: datetime
    action: Callable = field(compare=False)
    args: tuple = field(default_factory=tuple, compare=False)
    kwargs: dict = field(default_factory=dict, compare=False)
    stale: bool = field(default=False, compare=False)

    def cancel(self):
        """Cancel this event. It will not be executed when read from the heap"""
        self.stale = True


class TimerThread(ThreadBase):
    """Runs scheduled actions. This is similar to threading.Timer except that
    one shared thread runs all events instead of a thread per event.
    """

    def __init__(self, name: Optional[str] = None):
        super().__init__(name=name or "timer_thread", daemon=True)

        # A heap instead of a queue.PriorityQueue since synchronization is
        # already handled by the notify condition
        self.timer_heap: List[TimerEvent] = []
        self.notify_condition = threading.Condition()

    def run(self):
        """Sleep until the next scheduled event and execute all pending
        actions
        """
        while not self.should_stop():
            with self.notify_condition:
                time_to_sleep = self._get_time_to_sleep()
                if time_to_sleep is not None:
                    log.debug4("Timer waiting %ss until next scheduled event", time_to_sleep)
                self.notify_condition.wait(timeout=time_to_sleep)

            if self.should_stop():
                return

            for event in self._get_all_current_events():
                log.debug3("Timer executing action for event: %s", event)
                event.action(*event.args, **event.kwargs)

    def stop_thread(self):
        """Override stop_thread to wake the control loop"""
        super().stop_thread()
        with self.notify_condition:
            self.notify_condition.notify_all()

    ## Public Interface ########################################################

    def put_event(
        self,
        time: Union[datetime, timedelta, float],
        action: Callable,
        *args: Any,
        **kwargs: Dict,
    ) -> Optional[TimerEvent]:
        """Push an event to the timer

        Args:
            time:  Union[datetime, timedelta, float]
                When to execute the event. A timedelta or a number of seconds
                is relative to now.
            action:  Callable
                The action to execute
            *args:  Any
                Args to pass to the action
            **kwargs:  Dict
                Kwargs to pass to the action

        Returns:
            event:  Optional[TimerEvent]
                The scheduled event which can be cancelled. None if the timer
                is stopped.
        """
        if self.should_stop():
            return None

        if isinstance(time, (int, float)):
            time = timedelta(seconds=time)
        if isinstance(time, timedelta):
            time = datetime.now() + time

        event = TimerEvent(time=time, action=action, args=args, kwargs=kwargs)
        with self.notify_condition:
            heappush(self.timer_heap, event)
            self.notify_condition.notify_all()
        return event

    ## Implementation Details ##################################################

    def _get_time_to_sleep(self) -> Optional[float]:
        """The time until the next event, None if the heap is empty"""
        with self.notify_condition:
            if not self.timer_heap:
                return None
            time_to_sleep = (self.timer_heap[0].time - datetime.now()).total_seconds()
            return max(time_to_sleep, MIN_SLEEP_TIME)

    def _get_all_current_events(self) -> List[TimerEvent]:
        """Pop all events that are due"""
        event_list = []
        now = datetime.now()
        with self.notify_condition:
            while self.timer_heap and self.timer_heap[0].time <= now:
                event = heappop(self.timer_heap)
                if event.stale:
                    log.debug2("Skipping timer event %s", event)
                    continue
                event_list.append(event)
        return event_list
