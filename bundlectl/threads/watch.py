"""
The WatchThread monitors the cluster for changes to one kind and hands every
event to a handler
"""

# Standard
from typing import Callable, Optional

# First Party
import alog

# Local
from .. import config
from ..cluster import ObjectStore, WatchEvent
from .base import ThreadBase

log = alog.use_channel("WTCHTHRD")

# Seconds to wait before restarting a watch that failed
RESTART_DELAY = 1.0


class WatchThread(ThreadBase):
    """Continuously watches one apiVersion/kind and passes each event to the
    handler. Each watch call ends after the configured timeout and is then
    restarted so that shutdown is noticed.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        store: ObjectStore,
        api_version: str,
        kind: str,
        handler: Callable[[WatchEvent], None],
        namespace: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        name = f"watch_thread_{api_version}_{kind}"
        if namespace:
            name = name + f"_{namespace}"
        super().__init__(name=name, daemon=True)
        self.store = store
        self.api_version = api_version
        self.kind = kind
        self.handler = handler
        self.namespace = namespace or None
        self.timeout = timeout if timeout is not None else config.watch_timeout_seconds

    def run(self):
        while not self.should_stop():
            try:
                for event in self.store.watch_objects(
                    self.api_version, self.kind, namespace=self.namespace, timeout=self.timeout
                ):
                    if self.should_stop():
                        return
                    self.handler(event)
            except Exception as err:  # pylint: disable=broad-except
                log.warning(
                    "Watch of %s/%s failed, restarting: %s",
                    self.api_version,
                    self.kind,
                    err,
                    exc_info=True,
                )
                if not self.wait_on_shutdown(RESTART_DELAY):
                    return
