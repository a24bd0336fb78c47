from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

LIVE_SUBSCRIPTION_INDEX = "one_live_subscription_per_user"

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            # tz_aware so period timestamps come back comparable with datetime.now(timezone.utc)
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes, including the one-live-subscription constraint."""
        # At most one live (trial/active/past_due) subscription per user.
        # Canceled records drop is_current and fall outside the index.
        await self.db.user_subscriptions.create_index(
            "user_id",
            unique=True,
            partialFilterExpression={"is_current": True},
            name=LIVE_SUBSCRIPTION_INDEX,
        )
        await self.db.user_subscriptions.create_index("subscription_id", unique=True)
        await self.db.user_subscriptions.create_index([("user_id", 1), ("created_at", -1)])
        await self.db.user_subscriptions.create_index("provider_subscription_id")

        # Stripe webhook idempotency - duplicate event_id must not process twice
        await self.db.stripe_events.create_index("event_id", unique=True)

        await self.db.audit_logs.create_index([("user_id", 1), ("timestamp", -1)])
        await self.db.audit_logs.create_index("action")
        logger.info("MongoDB indexes created")

# Global database instance
database = Database()
