import logging
import queue

from huebridgectl.domain.models import StatusUpdate

LOG = logging.getLogger(__name__)


class LoggingStatusSink:
    def publish(self, update: StatusUpdate) -> None:
        if update.discovery_state is not None:
            LOG.info(
                "discovery state=%s candidates=%d%s",
                update.discovery_state.value,
                len(update.candidates),
                f" error={update.error}" if update.error else "",
            )
        if update.connection_state is not None:
            LOG.info(
                "connection state=%s%s%s",
                update.connection_state.value,
                " setup_required" if update.setup_required else "",
                f" error={update.error}" if update.error else "",
            )


class QueueStatusSink:
    """Buffers updates for a consumer on another thread."""

    def __init__(self, maxsize: int = 0) -> None:
        self.updates: "queue.Queue[StatusUpdate]" = queue.Queue(maxsize=maxsize)

    def publish(self, update: StatusUpdate) -> None:
        try:
            self.updates.put_nowait(update)
        except queue.Full:
            LOG.debug("status update dropped (queue full)")
