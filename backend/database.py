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
            # tz_aware so stored timestamps compare against datetime.now(timezone.utc)
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
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
        """Create MongoDB indexes for the fulfilment queries."""
        try:
            # Orders
            await self.db.orders.create_index("order_id", unique=True)
            try:
                await self.db.orders.create_index("order_number", unique=True, sparse=True)
            except Exception:
                pass  # Index may already exist with different options
            await self.db.orders.create_index([("artisan_id", 1), ("created_at", -1)])
            await self.db.orders.create_index([("buyer_id", 1), ("created_at", -1)])
            await self.db.orders.create_index([("status", 1), ("shipping_details.pickup_requested_at", -1)])
            await self.db.orders.create_index([("shipping_details.assigned_agent_id", 1), ("status", 1)])
            await self.db.orders.create_index("shipping_address.pin_code")
            await self.db.orders.create_index("wallet_credit.status", sparse=True)

            # Users and agent profiles
            await self.db.users.create_index("user_id", unique=True)
            try:
                await self.db.users.create_index("email", unique=True, sparse=True)
            except Exception:
                pass
            await self.db.users.create_index([("role", 1), ("is_active", 1)])
            await self.db.users.create_index("agent_profile.service_areas.pin_codes")
            await self.db.users.create_index("user_flags.flag")

            # Agent applications
            await self.db.agent_applications.create_index("application_id", unique=True)
            await self.db.agent_applications.create_index("personal_info.email")
            await self.db.agent_applications.create_index([("status", 1), ("created_at", -1)])

            # Audit log indexes - for activity feed queries
            await self.db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index("timestamp")

            # Message log indexes
            await self.db.message_logs.create_index([("created_at", -1)])
            await self.db.message_logs.create_index([("order_id", 1), ("created_at", -1)])

            # Notification outbox
            await self.db.notification_outbox.create_index([("status", 1), ("next_run_at", 1)])
            await self.db.notification_outbox.create_index("message_id", unique=True)

            # Password setup tokens for approved agents
            await self.db.password_tokens.create_index("token_hash", unique=True)
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

