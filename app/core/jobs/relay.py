import asyncio
import json
import logging
from typing import AsyncIterator, Dict, Optional, Protocol

from app.core.schemas import JobState

logger = logging.getLogger(__name__)

# Grace period between a terminal event and channel teardown
CONNECTION_CLOSE_DELAY = 1.0


class Sink(Protocol):
    def write(self, state: JobState) -> None: ...

    def close(self) -> None: ...


class PushChannel:
    """
    In-memory sink feeding one server-sent-events response.

    Example:
        channel = PushChannel()
        relay.setup_connection(job_id, channel, state)
        return StreamingResponse(channel.stream(), media_type="text/event-stream")
    """

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def write(self, state: JobState) -> None:
        if self.closed:
            raise RuntimeError("Channel is closed")
        self.queue.put_nowait(state.to_wire())

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(None)

    async def stream(self) -> AsyncIterator[str]:
        while True:
            item = await self.queue.get()
            if item is None:
                break
            yield f"data: {json.dumps(item, default=str)}\n\n"


class UpdateRelay:
    """
    Per-job push channels.

    At most one sink per job key. The registry is process-local: subscribers
    of one job must connect to the process that runs it.
    """

    def __init__(self, close_delay: float = CONNECTION_CLOSE_DELAY):
        self.close_delay = close_delay
        self.connections: Dict[str, Sink] = {}
        self._close_timers: Dict[str, asyncio.TimerHandle] = {}

    def setup_connection(self, job_key: str, sink: Sink, initial_state: JobState) -> None:
        # A newer subscriber replaces the old one; closing the old sink is the caller's job
        self._cancel_timer(job_key)
        self.connections[job_key] = sink
        logger.info(f"Push connection established for job {job_key}")

        try:
            self._write_and_maybe_close(job_key, sink, initial_state)
        except Exception as error:
            logger.error(f"Error sending initial state for job {job_key}: {error}")
            self.close_connection(job_key)

    def send_update(self, job_key: str, state: JobState) -> None:
        sink = self.connections.get(job_key)
        if sink is None:
            return

        try:
            self._write_and_maybe_close(job_key, sink, state)
        except Exception as error:
            logger.error(f"Error sending update for job {job_key}: {error}")
            self.close_connection(job_key)

    def close_connection(self, job_key: str) -> None:
        self._cancel_timer(job_key)
        sink = self.connections.pop(job_key, None)
        if sink is None:
            return

        try:
            sink.close()
            logger.info(f"Closed push connection for job {job_key}")
        except Exception as error:
            logger.error(f"Error closing push connection for job {job_key}: {error}")

    def has_connection(self, job_key: str) -> bool:
        return job_key in self.connections

    def _write_and_maybe_close(self, job_key: str, sink: Sink, state: JobState) -> None:
        sink.write(state)

        if state.is_terminal:
            self._cancel_timer(job_key)
            loop = asyncio.get_running_loop()
            self._close_timers[job_key] = loop.call_later(
                self.close_delay, self.close_if_current, job_key, sink
            )

    def close_if_current(self, job_key: str, sink: Sink) -> None:
        """Close the connection only while `sink` is still the registered one."""
        if self.connections.get(job_key) is sink:
            self.close_connection(job_key)

    def _cancel_timer(self, job_key: str) -> None:
        timer: Optional[asyncio.TimerHandle] = self._close_timers.pop(job_key, None)
        if timer is not None:
            timer.cancel()
