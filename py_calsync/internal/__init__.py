"""WebDAV transport shared by the CalDAV adapter."""

from .client import Client
from .internal import Depth, HTTPError, depth_to_string

__all__ = ["Client", "Depth", "HTTPError", "depth_to_string"]
