import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from .exceptions import DuplicateAttendance, TooManyAttempts
from .models import (
    AttendanceDecision,
    AttendanceWindow,
    ClassSession,
    FaceEmbedding,
    GeoPoint,
    as_utc,
    attendance_date,
    utc_now,
)

logger = logging.getLogger(__name__)


class AttendanceStore(ABC):
    """Read side used by the decision engine, write side used by the API."""

    @abstractmethod
    async def get_class_session(self, class_id: str) -> Optional[ClassSession]:
        ...

    @abstractmethod
    async def get_user_embeddings(self, user_id: str) -> List[FaceEmbedding]:
        ...

    @abstractmethod
    async def add_user_embeddings(self, user_id: str, embeddings: List[FaceEmbedding]) -> bool:
        """Append embeddings to the user's enrollment; False when the user does not exist."""

    @abstractmethod
    async def get_recent_attempts(
        self, user_id: str, class_id: str, window_minutes: int, now: Optional[datetime] = None
    ) -> List[datetime]:
        ...

    @abstractmethod
    async def get_last_location(self, user_id: str) -> Optional[GeoPoint]:
        ...

    @abstractmethod
    async def record_attempt(self, user_id: str, class_id: str, location: GeoPoint, at: datetime) -> None:
        ...

    @abstractmethod
    async def reserve_attempt(
        self,
        user_id: str,
        class_id: str,
        location: GeoPoint,
        at: datetime,
        window_minutes: int,
        max_attempts: int,
    ) -> int:
        """
        Count and record an attempt as one step.

        Returns:
            Number of earlier attempts inside the window

        Raises:
            TooManyAttempts: max_attempts already used; nothing is recorded
        """

    @abstractmethod
    async def get_existing_record(self, student_id: str, class_id: str, day: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def save_decision(self, decision: AttendanceDecision) -> str:
        """Persist a decision; raises DuplicateAttendance when that day already has one."""


def _embedding_from_doc(doc: Any) -> Optional[FaceEmbedding]:
    # Stored either as a bare list or as {embedding: [...], image_url, created_at}
    if isinstance(doc, list):
        return FaceEmbedding(vector=doc)
    if isinstance(doc, dict) and isinstance(doc.get("embedding"), list):
        return FaceEmbedding(
            vector=doc["embedding"],
            source_image_ref=doc.get("image_url"),
            created_at=as_utc(doc["created_at"]) if doc.get("created_at") else utc_now(),
        )
    logger.warning(f"⚠️ Invalid face embedding format: {type(doc).__name__}")
    return None


def _roster_from_doc(doc: Dict[str, Any]) -> Optional[List[str]]:
    # Entries are bare ids or {student_id, status}; only "enrolled" entries count
    entries = doc.get("enrolled_students")
    if entries is None:
        return None
    roster = []
    for entry in entries:
        if isinstance(entry, dict):
            if entry.get("status", "enrolled") != "enrolled":
                continue
            entry = entry.get("student_id")
        if entry is not None:
            roster.append(str(entry))
    return roster


def _session_from_doc(doc: Dict[str, Any]) -> ClassSession:
    teacher = doc.get("teacher_location")
    window = doc.get("attendance_window")
    start = doc.get("session_start_time")
    return ClassSession(
        class_id=str(doc["_id"]),
        status=doc.get("status", "scheduled"),
        session_start_time=as_utc(start) if start else None,
        teacher_location=GeoPoint(latitude=teacher["latitude"], longitude=teacher["longitude"]) if teacher else None,
        geofence_radius=doc.get("geofence_radius"),
        attendance_window=AttendanceWindow(**window) if window else None,
        enrolled_student_ids=_roster_from_doc(doc),
    )


class MongoAttendanceStore(AttendanceStore):
    """MongoDB-backed store (motor)."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.users_collection = db.users
        self.classes_collection = db.classes
        self.attendance_collection = db.attendance
        self.attempts_collection = db.attendance_attempts

    @classmethod
    def connect(cls, mongo_uri: str, db_name: str) -> "MongoAttendanceStore":
        client = AsyncIOMotorClient(mongo_uri)
        return cls(client[db_name])

    async def ensure_indexes(self):
        """One attendance record per student, class and day; attempts looked up by window."""
        await self.attendance_collection.create_index(
            [("student_id", ASCENDING), ("class_id", ASCENDING), ("attendance_date", ASCENDING)],
            unique=True,
            name="one_record_per_day",
        )
        await self.attempts_collection.create_index(
            [("student_id", ASCENDING), ("class_id", ASCENDING), ("timestamp", ASCENDING)],
            name="attempts_by_window",
        )

    @staticmethod
    def _id_query(value: str) -> Dict[str, Any]:
        return {"_id": ObjectId(value)} if ObjectId.is_valid(value) else {"_id": value}

    async def get_class_session(self, class_id: str) -> Optional[ClassSession]:
        doc = await self.classes_collection.find_one(self._id_query(class_id))
        if not doc:
            logger.warning(f"Class {class_id} not found")
            return None
        return _session_from_doc(doc)

    async def get_user_embeddings(self, user_id: str) -> List[FaceEmbedding]:
        user = await self.users_collection.find_one(self._id_query(user_id), {"face_embeddings": 1})
        if not user:
            return []
        embeddings = [_embedding_from_doc(d) for d in user.get("face_embeddings") or []]
        return [e for e in embeddings if e is not None]

    async def add_user_embeddings(self, user_id: str, embeddings: List[FaceEmbedding]) -> bool:
        docs = [
            {"embedding": e.vector, "image_url": e.source_image_ref, "created_at": e.created_at}
            for e in embeddings
        ]
        result = await self.users_collection.update_one(
            self._id_query(user_id),
            {"$push": {"face_embeddings": {"$each": docs}}},
        )
        if result.matched_count == 0:
            logger.warning(f"User {user_id} not found")
            return False
        logger.info(f"💾 Stored {len(docs)} face embeddings for user {user_id}")
        return True

    async def get_recent_attempts(
        self, user_id: str, class_id: str, window_minutes: int, now: Optional[datetime] = None
    ) -> List[datetime]:
        since = (now or utc_now()) - timedelta(minutes=window_minutes)
        cursor = self.attempts_collection.find(
            {"student_id": user_id, "class_id": class_id, "timestamp": {"$gte": since}}
        ).sort("timestamp", -1)
        return [as_utc(doc["timestamp"]) async for doc in cursor]

    async def get_last_location(self, user_id: str) -> Optional[GeoPoint]:
        doc = await self.attempts_collection.find_one(
            {"student_id": user_id, "location": {"$exists": True}},
            sort=[("timestamp", -1)],
        )
        if not doc:
            return None
        loc = doc["location"]
        return GeoPoint(
            latitude=loc["latitude"],
            longitude=loc["longitude"],
            accuracy=loc.get("accuracy"),
            captured_at=as_utc(doc["timestamp"]),
        )

    def _attempt_doc(self, user_id: str, class_id: str, location: GeoPoint, at: datetime) -> Dict[str, Any]:
        return {
            "student_id": user_id,
            "class_id": class_id,
            "timestamp": at,
            "location": location.model_dump(exclude={"captured_at"}),
        }

    async def record_attempt(self, user_id: str, class_id: str, location: GeoPoint, at: datetime) -> None:
        await self.attempts_collection.insert_one(self._attempt_doc(user_id, class_id, location, at))

    async def reserve_attempt(
        self,
        user_id: str,
        class_id: str,
        location: GeoPoint,
        at: datetime,
        window_minutes: int,
        max_attempts: int,
    ) -> int:
        # Insert first, then count everything in the window that was inserted
        # no later than this attempt. Concurrent writers each see a distinct
        # position, so at most max_attempts of them survive.
        result = await self.attempts_collection.insert_one(self._attempt_doc(user_id, class_id, location, at))
        since = at - timedelta(minutes=window_minutes)
        position = await self.attempts_collection.count_documents({
            "student_id": user_id,
            "class_id": class_id,
            "timestamp": {"$gte": since},
            "_id": {"$lte": result.inserted_id},
        })
        if position > max_attempts:
            await self.attempts_collection.delete_one({"_id": result.inserted_id})
            raise TooManyAttempts(position - 1, window_minutes)
        return position - 1

    async def get_existing_record(self, student_id: str, class_id: str, day: str) -> Optional[Dict[str, Any]]:
        return await self.attendance_collection.find_one(
            {"student_id": student_id, "class_id": class_id, "attendance_date": day},
            {"status": 1, "submitted_at": 1},
        )

    async def save_decision(self, decision: AttendanceDecision) -> str:
        record = decision.to_record()
        try:
            result = await self.attendance_collection.insert_one(record)
        except DuplicateKeyError:
            existing = await self.get_existing_record(decision.student_id, decision.class_id, record["attendance_date"])
            raise DuplicateAttendance(existing)
        logger.info(f"💾 Attendance record stored: {result.inserted_id}")
        return str(result.inserted_id)


class InMemoryAttendanceStore(AttendanceStore):
    """Dictionary-backed store for tests and local runs without MongoDB."""

    def __init__(self):
        self.sessions: Dict[str, ClassSession] = {}
        self.embeddings: Dict[str, List[FaceEmbedding]] = {}
        self.users: Optional[set] = None
        self.attempts: List[Dict[str, Any]] = []
        self.records: List[AttendanceDecision] = []

    def add_session(self, session: ClassSession):
        self.sessions[session.class_id] = session

    def add_embeddings(self, user_id: str, vectors: List[List[float]]):
        self.embeddings.setdefault(user_id, []).extend(FaceEmbedding(vector=v) for v in vectors)

    def _recent(self, user_id: str, class_id: str, since: datetime) -> List[datetime]:
        return sorted(
            (a["timestamp"] for a in self.attempts
             if a["student_id"] == user_id and a["class_id"] == class_id and a["timestamp"] >= since),
            reverse=True,
        )

    def _append_attempt(self, user_id: str, class_id: str, location: GeoPoint, at: datetime):
        self.attempts.append({
            "student_id": user_id,
            "class_id": class_id,
            "timestamp": as_utc(at),
            "location": location,
        })

    def _existing(self, student_id: str, class_id: str, day: str) -> Optional[AttendanceDecision]:
        return next(
            (r for r in self.records
             if r.student_id == student_id and r.class_id == class_id and attendance_date(r.submitted_at) == day),
            None,
        )

    async def get_class_session(self, class_id: str) -> Optional[ClassSession]:
        return self.sessions.get(class_id)

    async def get_user_embeddings(self, user_id: str) -> List[FaceEmbedding]:
        return list(self.embeddings.get(user_id, []))

    async def add_user_embeddings(self, user_id: str, embeddings: List[FaceEmbedding]) -> bool:
        # users stays None unless a test wants unknown ids rejected
        if self.users is not None and user_id not in self.users:
            return False
        self.embeddings.setdefault(user_id, []).extend(embeddings)
        return True

    async def get_recent_attempts(
        self, user_id: str, class_id: str, window_minutes: int, now: Optional[datetime] = None
    ) -> List[datetime]:
        since = (now or utc_now()) - timedelta(minutes=window_minutes)
        return self._recent(user_id, class_id, since)

    async def get_last_location(self, user_id: str) -> Optional[GeoPoint]:
        mine = [a for a in self.attempts if a["student_id"] == user_id]
        if not mine:
            return None
        last = max(mine, key=lambda a: a["timestamp"])
        return last["location"].model_copy(update={"captured_at": last["timestamp"]})

    async def record_attempt(self, user_id: str, class_id: str, location: GeoPoint, at: datetime) -> None:
        self._append_attempt(user_id, class_id, location, at)

    async def reserve_attempt(
        self,
        user_id: str,
        class_id: str,
        location: GeoPoint,
        at: datetime,
        window_minutes: int,
        max_attempts: int,
    ) -> int:
        # No await between the count and the append
        prior = len(self._recent(user_id, class_id, as_utc(at) - timedelta(minutes=window_minutes)))
        if prior >= max_attempts:
            raise TooManyAttempts(prior, window_minutes)
        self._append_attempt(user_id, class_id, location, at)
        return prior

    async def get_existing_record(self, student_id: str, class_id: str, day: str) -> Optional[Dict[str, Any]]:
        existing = self._existing(student_id, class_id, day)
        return existing.to_record() if existing is not None else None

    async def save_decision(self, decision: AttendanceDecision) -> str:
        existing = self._existing(decision.student_id, decision.class_id, attendance_date(decision.submitted_at))
        if existing is not None:
            raise DuplicateAttendance(existing.to_record())
        self.records.append(decision)
        return str(len(self.records))
