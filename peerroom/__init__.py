"""PeerRoom establishes direct peer channels through an expiring relay."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('peerroom')
