"""MongoDB Client - Connection and Index Management"""
from typing import Any, Dict, Optional
from pymongo import MongoClient, ASCENDING, DESCENDING
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, PyMongoError

from ..config.settings import Settings, get_settings
from ..utils.logger import get_logger

logger = get_logger(__name__)


def create_client(settings: Optional[Settings] = None, ping: bool = True) -> MongoClient:
    """Create a MongoDB client from settings"""
    settings = settings or get_settings()
    logger.info(f"Connecting to MongoDB: {settings.mongo_uri}")
    client = MongoClient(
        settings.mongo_uri,
        serverSelectionTimeoutMS=5000,
        connectTimeoutMS=5000,
        socketTimeoutMS=30000,
        tz_aware=True,
    )
    if ping:
        try:
            client.admin.command("ping")
            logger.info("MongoDB connection successful")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise
    return client


def get_database(client: MongoClient, settings: Optional[Settings] = None) -> Database:
    """Get the engine database"""
    settings = settings or get_settings()
    return client[settings.mongo_db]


def create_indexes(db: Database) -> None:
    """Create all required indexes"""
    logger.info("Creating MongoDB indexes...")

    definitions = db["definitions"]
    definitions.create_index("definition_id", unique=True)
    definitions.create_index([("name", ASCENDING), ("version", DESCENDING)], unique=True)
    definitions.create_index("status")

    instances = db["instances"]
    instances.create_index("instance_id", unique=True)
    instances.create_index([("definition_id", ASCENDING), ("status", ASCENDING)])
    instances.create_index("locked_until")
    instances.create_index([("status", ASCENDING), ("current_step", ASCENDING)])

    executions = db["executions"]
    executions.create_index("execution_id", unique=True)
    executions.create_index([("instance_id", ASCENDING), ("seq", ASCENDING)])
    executions.create_index([("status", ASCENDING), ("scheduled_for", ASCENDING)])
    executions.create_index([("status", ASCENDING), ("started_at", ASCENDING)])

    assignments = db["assignments"]
    assignments.create_index("assignment_id", unique=True)
    assignments.create_index([("execution_id", ASCENDING), ("seq", ASCENDING)])
    assignments.create_index("instance_id")
    assignments.create_index([("assignee", ASCENDING), ("status", ASCENDING)])

    audit_events = db["audit_events"]
    audit_events.create_index("event_id", unique=True)
    audit_events.create_index([("instance_id", ASCENDING), ("seq", ASCENDING)])

    logger.info("MongoDB indexes created successfully")


def health_check(client: MongoClient, settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Check MongoDB health"""
    settings = settings or get_settings()
    try:
        client.admin.command("ping")
        return {
            "status": "healthy",
            "database": settings.mongo_db,
            "connection": "ok"
        }
    except PyMongoError as e:
        logger.error(f"MongoDB health check failed: {e}")
        return {
            "status": "unhealthy",
            "database": settings.mongo_db,
            "error": str(e)
        }
