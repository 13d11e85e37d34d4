import asyncio
import logging
from typing import AsyncIterator, Dict, List, Optional

from studio.models.generations import JobProgress

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

KEEPALIVE_SECONDS = 30.0

# Put on a dropped subscriber's queue to end its stream
_CLOSED = object()


def format_sse(progress: Optional[JobProgress]) -> str:
    """Format a progress event as a server-sent event; None is a keepalive."""
    if progress is None:
        return ": keepalive\n\n"
    return f"event: progress\ndata: {progress.model_dump_json()}\n\n"


class ProgressBroker:
    """Broker for job progress events.

    Manages subscriber queues per job and broadcasts events. Subscribers
    that fall behind (full queue) are dropped, and their streams end.
    """

    def __init__(self, max_queue_size: int = 50):
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self._max_queue = max_queue_size

    def subscribe(self, job_id: str) -> asyncio.Queue:
        """Subscribe to a job. Returns a queue that will receive its events."""
        q: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.setdefault(job_id, []).append(q)
        return q

    def unsubscribe(self, job_id: str, q: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(job_id, [])
        if q in subscribers:
            subscribers.remove(q)
        if not subscribers:
            self._subscribers.pop(job_id, None)

    def publish(self, progress: JobProgress) -> None:
        """Broadcast an event to all subscribers of its job."""
        dead: List[asyncio.Queue] = []
        for q in self._subscribers.get(progress.job_id, []):
            try:
                q.put_nowait(progress)
            except asyncio.QueueFull:
                dead.append(q)
        for q in dead:
            logger.warning(f"Dropping slow progress subscriber of job {progress.job_id}")
            self.unsubscribe(progress.job_id, q)
            self._close(q)

    @staticmethod
    def _close(q: asyncio.Queue) -> None:
        while not q.empty():
            q.get_nowait()
        q.put_nowait(_CLOSED)

    async def stream(
        self,
        job_id: str,
        q: asyncio.Queue,
        keepalive: Optional[float] = None,
    ) -> AsyncIterator[Optional[JobProgress]]:
        """
        Yield events from a subscribed queue until a terminal event.

        With a keepalive interval, None is yielded whenever no event arrived
        within it. A dropped subscriber's stream ends early; the queue is
        unsubscribed when the stream ends.
        """
        try:
            while True:
                try:
                    if keepalive is None:
                        progress = await q.get()
                    else:
                        progress = await asyncio.wait_for(q.get(), timeout=keepalive)
                except asyncio.TimeoutError:
                    yield None
                    continue

                if progress is _CLOSED:
                    return

                yield progress
                if progress.is_terminal:
                    return
        finally:
            self.unsubscribe(job_id, q)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, []))
