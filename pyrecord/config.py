from __future__ import annotations

import logging
from typing import Any, Callable, TypedDict

logger = logging.getLogger(__name__)


class RecorderConfig(TypedDict, total=False):
    """Configuration for a :class:`~pyrecord.Recorder`.

    Every key is optional; :meth:`Recorder.from_config` fills in defaults.
    """

    auto_replay: bool
    """Flush the log automatically on the next event-loop turn (default True)."""

    use_finalization: bool
    """Release a stand-in's identifier when the stand-in is garbage collected (default True)."""

    debug: bool
    """Set the ``pyrecord`` logger to DEBUG."""

    onerror: Callable[[BaseException], Any]
    """Receives replay failures arriving over the port and fire-and-forget callback errors."""
