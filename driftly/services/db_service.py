# /driftly/services/db_service.py

import logging
from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple, Iterable
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from driftly.config.settings import settings
from driftly.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

# Constants
DEFAULT_QUERY_LIMIT = 500
FLOWS = "flows"
CONTACTS = "contacts"
REFERENCE_FIELDS = ("owner", "flow")


def _oid(value: Any) -> Any:
    """Convert a 24-hex id string to ObjectId; anything else is used as stored."""
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


def _with_object_ids(document: Dict[str, Any], fields: Iterable[str] = REFERENCE_FIELDS) -> Dict[str, Any]:
    converted = dict(document)
    for field in ("_id", *fields):
        if converted.get(field) is not None:
            converted[field] = _oid(converted[field])
    return converted


class DatabaseService:
    """
    MongoDB access for flows and contacts.

    Every write the engine performs goes through one of the targeted update
    methods below and is scoped to a single document by `_id`, except the
    explicit multi-document operations used by retry-all and manual triggers.
    Failures propagate to the caller: the per-contact boundary decides what a
    failed write means for that contact.
    """

    def __init__(self, mongo_uri: str):
        try:
            self.client = AsyncIOMotorClient(
                mongo_uri,
                maxPoolSize=settings.max_pool_size,
                minPoolSize=settings.min_pool_size,
                tls=settings.mongo_ssl,
                tz_aware=True,
                serverSelectionTimeoutMS=5000,
                connectTimeoutMS=10000
            )
            self.db = self.client.get_default_database()
            logger.info("MongoDB client initialized successfully.")
        except Exception as e:
            logger.error(f"Error initializing MongoDB client: {e}")
            raise

    # ==================== Helper Methods ====================

    async def _tracked(self, operation_name: str, operation) -> Any:
        """Run a database call, counting attempts and failures per operation."""
        try:
            result = await operation()
        except Exception as e:
            database_operations_counter.labels(operation=operation_name, status="failed").inc()
            logger.error(f"Database operation {operation_name} failed: {type(e).__name__}: {e}")
            raise
        database_operations_counter.labels(operation=operation_name, status="success").inc()
        return result

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            (CONTACTS, [("status", ASCENDING), ("nextProcessingDate", ASCENDING)], {}),
            (CONTACTS, [("status", ASCENDING), ("nextEmailDate", ASCENDING)], {}),
            (CONTACTS, [("flow", ASCENDING), ("status", ASCENDING)], {}),
            (CONTACTS, [("flow", ASCENDING), ("email", ASCENDING)], {}),
            (CONTACTS, [("leaseExpiresAt", ASCENDING)], {"sparse": True}),
            (FLOWS, [("owner", ASCENDING), ("createdAt", DESCENDING)], {}),
            (FLOWS, [("isActive", ASCENDING)], {}),
        ]

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command('ping')
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    # ==================== Flow Operations ====================

    async def get_flow(self, flow_id: str) -> Optional[Dict[str, Any]]:
        return await self._tracked(
            "get_flow", lambda: self.db[FLOWS].find_one({"_id": _oid(flow_id)})
        )

    async def insert_flow(self, document: Dict[str, Any]) -> str:
        result = await self._tracked(
            "insert_flow", lambda: self.db[FLOWS].insert_one(_with_object_ids(document, ("owner",)))
        )
        return str(result.inserted_id)

    async def update_flow(self, flow_id: str, update: Dict[str, Any]) -> bool:
        """Apply one update document ($set/$inc/$push...) to a flow."""
        if not update:
            return False
        result = await self._tracked(
            "update_flow", lambda: self.db[FLOWS].update_one({"_id": _oid(flow_id)}, update)
        )
        return result.matched_count > 0

    # ==================== Contact Operations ====================

    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        return await self._tracked(
            "get_contact", lambda: self.db[CONTACTS].find_one({"_id": _oid(contact_id)})
        )

    async def insert_contact(self, document: Dict[str, Any]) -> str:
        result = await self._tracked(
            "insert_contact", lambda: self.db[CONTACTS].insert_one(_with_object_ids(document))
        )
        return str(result.inserted_id)

    async def update_contact(
        self,
        contact_id: str,
        update: Dict[str, Any],
        expected_status: Optional[str] = None,
        conditions: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Apply one targeted update document to a single contact.

        Args:
            contact_id: Contact _id
            update: Update document built by UpdateBuilder
            expected_status: When set, only update if the contact still has this status
            conditions: Extra equality filters (None matches a missing field)

        Returns:
            True if a contact matched the filter
        """
        if not update:
            return False
        query: Dict[str, Any] = {"_id": _oid(contact_id)}
        if expected_status is not None:
            query["status"] = expected_status
        if conditions:
            query.update(conditions)
        result = await self._tracked(
            "update_contact", lambda: self.db[CONTACTS].update_one(query, update)
        )
        return result.matched_count > 0

    async def find_paused_flow_ids(self) -> List[Any]:
        """Ids of flows with isActive=false, as stored in contact.flow."""
        return await self._tracked(
            "find_paused_flow_ids", lambda: self.db[FLOWS].distinct("_id", {"isActive": False})
        )

    async def find_due_contacts(
        self,
        now: datetime,
        limit: int = DEFAULT_QUERY_LIMIT,
        exclude_flows: Iterable[Any] = ()
    ) -> List[Dict[str, Any]]:
        """Active contacts whose nextProcessingDate has passed, oldest first, outside the excluded flows."""
        query: Dict[str, Any] = {"status": "active", "nextProcessingDate": {"$ne": None, "$lte": now}}
        excluded = [_oid(flow_id) for flow_id in exclude_flows]
        if excluded:
            query["flow"] = {"$nin": excluded}
        cursor = self.db[CONTACTS].find(query).sort("nextProcessingDate", ASCENDING).limit(limit)
        return await self._tracked("find_due_contacts", lambda: cursor.to_list(length=limit))

    async def find_legacy_due_contacts(
        self,
        now: datetime,
        limit: int = DEFAULT_QUERY_LIMIT,
        exclude_flows: Iterable[Any] = ()
    ) -> List[Dict[str, Any]]:
        """Active contacts still positioned by numeric currentStep and scheduled by nextEmailDate."""
        flow_filter: Dict[str, Any] = {"$ne": None}
        excluded = [_oid(flow_id) for flow_id in exclude_flows]
        if excluded:
            flow_filter["$nin"] = excluded
        cursor = self.db[CONTACTS].find({
            "status": "active",
            "flow": flow_filter,
            "currentStepId": None,
            "nextEmailDate": {"$ne": None, "$lte": now},
        }).sort("nextEmailDate", ASCENDING).limit(limit)
        return await self._tracked("find_legacy_due_contacts", lambda: cursor.to_list(length=limit))

    async def claim_contact(
        self,
        contact_id: str,
        now: datetime,
        lease_until: datetime,
        worker_id: str
    ) -> Optional[Dict[str, Any]]:
        """
        Take the per-contact processing lease.

        Returns the freshly read contact when the lease was free or expired,
        None when another worker holds it.
        """
        return await self._tracked(
            "claim_contact",
            lambda: self.db[CONTACTS].find_one_and_update(
                {
                    "_id": _oid(contact_id),
                    "$or": [{"leaseExpiresAt": None}, {"leaseExpiresAt": {"$lte": now}}],
                },
                {"$set": {"leaseExpiresAt": lease_until, "leaseOwner": worker_id}},
                return_document=ReturnDocument.AFTER,
            )
        )

    async def release_contact(self, contact_id: str, worker_id: str) -> None:
        await self._tracked(
            "release_contact",
            lambda: self.db[CONTACTS].update_one(
                {"_id": _oid(contact_id), "leaseOwner": worker_id},
                {"$unset": {"leaseExpiresAt": "", "leaseOwner": ""}}
            )
        )

    async def find_contact_in_flow(self, flow_id: str, email: str) -> Optional[Dict[str, Any]]:
        return await self._tracked(
            "find_contact_in_flow",
            lambda: self.db[CONTACTS].find_one({"flow": _oid(flow_id), "email": email})
        )

    async def find_contacts(
        self,
        flow_id: str,
        status: Optional[str] = None,
        limit: int = DEFAULT_QUERY_LIMIT
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"flow": _oid(flow_id)}
        if status:
            query["status"] = status
        cursor = self.db[CONTACTS].find(query).sort("updatedAt", DESCENDING).limit(limit)
        return await self._tracked("find_contacts", lambda: cursor.to_list(length=limit))

    async def update_contacts_by_status(
        self,
        flow_id: str,
        status: str,
        update: Dict[str, Any]
    ) -> Tuple[int, int]:
        """Multi-document conditional update. Returns (matched, modified)."""
        result = await self._tracked(
            "update_contacts_by_status",
            lambda: self.db[CONTACTS].update_many({"flow": _oid(flow_id), "status": status}, update)
        )
        return result.matched_count, result.modified_count

    async def reschedule_active_contacts(self, flow_id: str, now: datetime) -> int:
        """Make every active contact of a flow due immediately."""
        result = await self._tracked(
            "reschedule_active_contacts",
            lambda: self.db[CONTACTS].update_many(
                {"flow": _oid(flow_id), "status": "active"},
                {"$set": {"nextProcessingDate": now, "updatedAt": now}}
            )
        )
        return result.modified_count


# Globally accessible instance
db_service = DatabaseService(settings.mongo_uri)
