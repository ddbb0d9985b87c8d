"""
Tests for the WatchThread
"""
# Standard
from unittest import mock
import threading

# Local
from bundlectl.cluster import WatchEventType
from bundlectl.test_helpers.helpers import make_configmap, setup_cluster
from bundlectl.threads import WatchThread


def test_watch_thread_delivers_events():
    cluster = setup_cluster(resources=[make_configmap("first", namespace="test")])
    events = []
    got_both = threading.Event()

    def handler(event):
        events.append(event)
        if len(events) == 2:
            got_both.set()

    thread = WatchThread(cluster, "v1", "ConfigMap", handler, namespace="test", timeout=1)
    assert thread.name == "watch_thread_v1_ConfigMap_test"
    thread.start_thread()
    try:
        # Wait for the initial listing before writing
        for _ in range(100):
            if events:
                break
            threading.Event().wait(0.01)
        cluster.create(make_configmap("second", namespace="test"))
        assert got_both.wait(timeout=2)
    finally:
        thread.stop_thread()
    assert [event.type for event in events] == [WatchEventType.ADDED, WatchEventType.ADDED]
    assert [event.obj["metadata"]["name"] for event in events] == ["first", "second"]


def test_watch_thread_restarts_after_failure():
    """A failing watch is retried until the thread is stopped"""
    store = mock.Mock()
    calls = threading.Event()

    def watch_objects(*_, **__):
        if store.watch_objects.call_count >= 2:
            calls.set()
        raise RuntimeError("connection reset")

    store.watch_objects.side_effect = watch_objects
    thread = WatchThread(store, "v1", "ConfigMap", mock.Mock(), timeout=1)
    with mock.patch("bundlectl.threads.watch.RESTART_DELAY", 0.01):
        thread.start_thread()
        try:
            assert calls.wait(timeout=2)
        finally:
            thread.stop_thread()
        thread.join(timeout=1)
    assert not thread.is_alive()
