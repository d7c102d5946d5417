from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
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
        """Create MongoDB indexes for lookups and uniqueness guarantees."""
        try:
            # Plan catalog: exactly one document per plan name
            await self.db.plans.create_index("name", unique=True)

            await self.db.users.create_index("user_id", unique=True)

            # One subscription per user; webhooks correlate by gateway reference
            await self.db.subscriptions.create_index("user_id", unique=True)
            await self.db.subscriptions.create_index("gateway_reference", sparse=True)
            await self.db.subscriptions.create_index([("status", 1), ("current_period_end", 1)])

            # Webhook delivery dedupe - same provider event must not process twice
            try:
                await self.db.payment_events.create_index("event_key", unique=True)
            except Exception:
                pass  # Index may already exist with different options
            await self.db.payment_events.create_index([("correlation_id", 1), ("received_at", -1)])

            await self.db.reports.create_index([("user_id", 1), ("created_at", -1)])

            await self.db.audit_logs.create_index([("user_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()
