"""
Custom logging formats that carry the identity of the Bundle being reconciled
"""

# Standard
from contextlib import contextmanager
from typing import Optional
import threading

# First Party
from alog import AlogJsonFormatter
import alog

log = alog.use_channel("LOGFMT")

# Each worker thread reconciles one Bundle at a time
_context = threading.local()


@contextmanager
def bundle_context(namespace: str, name: str):
    """Attach the Bundle identity to all logs of the current thread"""
    previous = getattr(_context, "bundle", None)
    _context.bundle = (namespace, name)
    try:
        yield
    finally:
        _context.bundle = previous


@contextmanager
def resource_context(resource_name: Optional[str]):
    """Attach the resource name to all logs of the current thread"""
    previous = getattr(_context, "resource", None)
    _context.resource = resource_name
    try:
        yield
    finally:
        _context.resource = previous


class BundleJsonFormatter(AlogJsonFormatter):
    """Custom Log Format that extends AlogJsonFormatter to add the identity of
    the Bundle and resource being reconciled, and thread information
    """

    _FIELDS_TO_PRINT = AlogJsonFormatter._FIELDS_TO_PRINT + [
        "process",
        "thread",
        "threadName",
        "bundleNamespace",
        "bundleName",
        "resourceName",
    ]

    def format(self, record):
        bundle = getattr(_context, "bundle", None)
        if bundle:
            record.bundleNamespace, record.bundleName = bundle

        resource_name = getattr(_context, "resource", None)
        if resource_name:
            record.resourceName = resource_name

        return super().format(record)
