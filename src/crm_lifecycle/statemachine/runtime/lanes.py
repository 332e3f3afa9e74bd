"""Per-instance serialization lanes.

Events are partitioned by a stable hash of the instance key onto a fixed number
of single-threaded lanes. Each lane drains its queue in submission order, so all
events for one instance apply strictly in order while unrelated instances on
other lanes proceed in parallel.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import ParamSpec, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def lane_index(object_type: str, entity_id: str, lane_count: int) -> int:
    digest = hashlib.sha1(f"{object_type}:{entity_id}".encode()).digest()
    return int.from_bytes(digest[:8], "big") % lane_count


class LaneDispatcher:
    def __init__(self, lane_count: int = 8) -> None:
        if lane_count < 1:
            raise ValueError("lane_count must be >= 1")
        self._lanes = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"lifecycle-lane-{i}")
            for i in range(lane_count)
        ]

    @property
    def lane_count(self) -> int:
        return len(self._lanes)

    def submit(
        self,
        object_type: str,
        entity_id: str,
        fn: Callable[P, T],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> Future[T]:
        lane = self._lanes[lane_index(object_type, entity_id, len(self._lanes))]
        return lane.submit(fn, *args, **kwargs)

    def shutdown(self, *, wait: bool = True) -> None:
        for lane in self._lanes:
            lane.shutdown(wait=wait)
        logger.debug("Lanes shut down", extra={"lanes": len(self._lanes)})
