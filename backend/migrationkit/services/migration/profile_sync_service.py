"""
Queues profile changes for a separate sync worker.

Only the producer side lives here; consuming the queue and applying the
changes to the other tenant happens outside the engine.
"""

from logconfig.logger import get_logger
from migrationkit.models.profile_update import ProfileUpdateMessage
from migrationkit.services.storage.queue_client import MessageQueue
from migrationkit.services.telemetry.telemetry_service import TelemetryService

logger = get_logger()


class ProfileSyncService:
    def __init__(self, queue: MessageQueue, telemetry: TelemetryService):
        self.queue = queue
        self.telemetry = telemetry

    async def queue_profile_update(self, message: ProfileUpdateMessage) -> str:
        """Enqueue one profile update; queue errors propagate to the caller."""
        try:
            message_id = await self.queue.send(message.to_queue_payload())
        except Exception as e:
            logger.error(f"Failed to queue profile update for user {message.user_id}: {e}")
            self.telemetry.track_exception(e, {"user_id": message.user_id})
            raise

        logger.info(f"Queued profile update for user {message.user_id} from {message.source.value}")
        self.telemetry.increment_counter("ProfileSync.MessagesQueued")
        return message_id
