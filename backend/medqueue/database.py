"""
MongoDB async database connection using Motor.
Provides the master database, per-institution tenant databases and
collection access.
"""

import logging
from typing import Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import PyMongoError

from .config import get_settings
from .exceptions import NotFound, PersistenceError

settings = get_settings()
logger = logging.getLogger(__name__)


class Database:
    """MongoDB database connection manager."""

    client: Optional[AsyncIOMotorClient] = None
    db: Optional[AsyncIOMotorDatabase] = None
    _tenant_dbs: Dict[str, AsyncIOMotorDatabase] = {}

    @classmethod
    async def connect(cls, client: Optional[AsyncIOMotorClient] = None):
        """Connect to MongoDB. An already built client may be handed in."""
        cls._tenant_dbs = {}
        if client is not None:
            cls.client = client
        else:
            cls.client = AsyncIOMotorClient(settings.MONGODB_URL)
            # Verify connection
            await cls.client.admin.command('ping')
        cls.db = cls.client[settings.MASTER_DATABASE_NAME]
        logger.info("Connected to MongoDB master database %s", settings.MASTER_DATABASE_NAME)

        await cls.db.institutions.create_index("institution_id", unique=True)

    @classmethod
    async def disconnect(cls):
        """Disconnect from MongoDB."""
        if cls.client:
            cls.client.close()
            logger.info("Disconnected from MongoDB")
        cls.client = None
        cls.db = None
        cls._tenant_dbs = {}

    @classmethod
    async def _create_tenant_indexes(cls, tenant_db: AsyncIOMotorDatabase):
        """Create indexes the scheduling engine relies on."""
        # One counter document per scope per day: the atomic upsert depends on it
        await tenant_db.daily_counters.create_index(
            [("institution_id", ASCENDING), ("date", ASCENDING), ("scope", ASCENDING)],
            unique=True
        )

        await tenant_db.queue_tokens.create_index(
            [("institution_id", ASCENDING), ("date", ASCENDING),
             ("scope", ASCENDING), ("sequence", ASCENDING)]
        )
        await tenant_db.queue_tokens.create_index(
            [("doctor_id", ASCENDING), ("date", ASCENDING),
             ("shift_name", ASCENDING), ("status", ASCENDING)]
        )
        await tenant_db.queue_tokens.create_index("status")

        await tenant_db.live_shifts.create_index(
            [("institution_id", ASCENDING), ("date", ASCENDING),
             ("doctor_id", ASCENDING), ("shift_name", ASCENDING)],
            unique=True
        )

        await tenant_db.doctors.create_index("doctor_id", unique=True)
        await tenant_db.doctors.create_index("institution_id")

    @classmethod
    def get_collection(cls, name: str):
        """Get a collection of the master database by name."""
        if cls.db is None:
            raise RuntimeError("Database not connected")
        return cls.db[name]

    @classmethod
    async def get_institution(cls, institution_id: str) -> dict:
        """Fetch an institution record from the master registry."""
        institutions = cls.get_collection("institutions")
        try:
            institution = await institutions.find_one({"institution_id": institution_id})
        except PyMongoError as e:
            raise PersistenceError(f"Institution lookup failed: {e}") from e

        if not institution:
            raise NotFound(f"Institution '{institution_id}' not found")
        return institution

    @classmethod
    async def get_tenant_database(cls, institution_id: str) -> AsyncIOMotorDatabase:
        """Resolve an institution to its isolated database handle."""
        tenant_db = cls._tenant_dbs.get(institution_id)
        if tenant_db is not None:
            return tenant_db

        institution = await cls.get_institution(institution_id)
        db_name = institution.get("db_name") or f"{settings.TENANT_DATABASE_PREFIX}{institution_id}"
        tenant_db = cls.client[db_name]

        try:
            await cls._create_tenant_indexes(tenant_db)
        except PyMongoError as e:
            raise PersistenceError(f"Could not prepare tenant database {db_name}: {e}") from e

        cls._tenant_dbs[institution_id] = tenant_db
        logger.info("Resolved institution %s to database %s", institution_id, db_name)
        return tenant_db

    @classmethod
    async def get_tenant_collection(cls, institution_id: str, name: str):
        """Get a collection inside an institution's own database."""
        tenant_db = await cls.get_tenant_database(institution_id)
        return tenant_db[name]

