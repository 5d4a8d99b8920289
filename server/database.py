"""
Key store: database models and operations for E2EE key material.

Uses SQLAlchemy (async, SQLite by default) for two tables:
``e2ee_keys`` holds each user's identity key, signed pre-keys and
one-time pre-key pool; ``e2ee_sessions`` holds per-pair ratchet state.
Decrypted plaintext is never stored here.
"""

import json
import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from sqlalchemy import Column, DateTime, Boolean, Integer, String, Text, UniqueConstraint
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from e2ee.config import E2EEConfig
from e2ee.errors import (
    E2EEError,
    InvalidKeyError,
    KeyIntegrityError,
    PreKeyExhaustedError,
    PreKeyReuseError,
    StorageError,
    UnknownSessionError,
    UnknownUserError,
)
from e2ee.key_agreement import (
    KeyAgreement,
    PublicBundle,
    SignedPreKeyPublic,
    initial_chains,
    session_pair,
)
from e2ee.primitives import (
    KEY_SIZE,
    SIGNATURE_SIZE,
    b64decode,
    b64encode,
    deserialize_private_key,
    deserialize_signing_private_key,
    generate_dh_keypair,
    generate_signing_keypair,
    serialize_private_key,
    serialize_public_key,
    sign,
    wipe,
)
from e2ee.ratchet import ChainCounters, RatchetState
from .locks import KeyedLocks, ReadWriteLock

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class E2EEKeys(Base):
    """Per-user key material"""
    __tablename__ = "e2ee_keys"

    user_id = Column(String(128), primary_key=True)
    identity_private = Column(String(64), nullable=False)  # X25519 (base64)
    identity_public = Column(String(64), nullable=False)
    signing_private = Column(String(64), nullable=False)  # Ed25519 (base64)
    signing_public = Column(String(64), nullable=False)
    signed_pre_key_id = Column(Integer, nullable=False)
    signed_pre_key_private = Column(String(64), nullable=False)
    signed_pre_key_public = Column(String(64), nullable=False)
    signed_pre_key_signature = Column(String(128), nullable=False)
    signed_pre_key_created_at = Column(DateTime, default=_utcnow)
    previous_signed_pre_keys = Column(Text, nullable=False, default="[]")  # JSON array
    one_time_pre_keys = Column(Text, nullable=False, default="[]")  # JSON array, available pool
    issued_one_time_pre_keys = Column(Text, nullable=False, default="[]")  # handed out, not yet consumed
    next_pre_key_id = Column(Integer, nullable=False, default=1)
    quarantined = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class E2EESession(Base):
    """Ratchet state for an unordered pair of users"""
    __tablename__ = "e2ee_sessions"
    __table_args__ = (UniqueConstraint("user_a", "user_b", name="uq_e2ee_sessions_pair"),)

    id = Column(String(64), primary_key=True)
    user_a = Column(String(128), index=True, nullable=False)  # lexicographically lower id
    user_b = Column(String(128), index=True, nullable=False)
    initiator_id = Column(String(128), nullable=False)
    ephemeral_public = Column(String(64), nullable=False)
    signed_pre_key_id = Column(Integer, nullable=False)
    one_time_pre_key_id = Column(Integer, nullable=True)
    state_a = Column(Text, nullable=False)  # RatchetState JSON for user_a
    state_b = Column(Text, nullable=False)
    quarantined = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class _CorruptRecord(Exception):
    """Raised inside a transaction; turned into quarantine + KeyIntegrityError"""

    def __init__(self, model, key: str, reason: str):
        super().__init__(reason)
        self.model = model
        self.key = key
        self.reason = reason


def _decode(model, key: str, name: str, value: str, length: int) -> bytes:
    try:
        raw = b64decode(value or "")
    except ValueError:
        raise _CorruptRecord(model, key, f"{name} is not valid base64")
    if len(raw) != length:
        raise _CorruptRecord(model, key, f"{name} has length {len(raw)}, expected {length}")
    return raw


def _load_json_list(model, key: str, name: str, value: str) -> List[Dict]:
    try:
        entries = json.loads(value or "[]")
    except json.JSONDecodeError:
        raise _CorruptRecord(model, key, f"{name} is not valid JSON")
    if not isinstance(entries, list):
        raise _CorruptRecord(model, key, f"{name} is not a list")
    return entries


@dataclass
class PreKeyPair:
    key_id: int
    private: bytes
    public: bytes
    issued_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        data = {'id': self.key_id, 'private': b64encode(self.private), 'public': b64encode(self.public)}
        if self.issued_at is not None:
            data['issued_at'] = self.issued_at.isoformat()
        return data


@dataclass
class RetiredSignedPreKey:
    key_id: int
    private: bytes
    public: bytes
    signature: bytes
    retired_at: datetime

    def to_dict(self) -> Dict:
        return {
            'id': self.key_id,
            'private': b64encode(self.private),
            'public': b64encode(self.public),
            'signature': b64encode(self.signature),
            'retired_at': self.retired_at.isoformat(),
        }


@dataclass
class KeyMaterial:
    """Decoded and length-checked contents of an ``e2ee_keys`` row"""
    user_id: str
    identity_private: bytes
    identity_public: bytes
    signing_private: bytes
    signing_public: bytes
    signed_pre_key_id: int
    signed_pre_key_private: bytes
    signed_pre_key_public: bytes
    signed_pre_key_signature: bytes
    signed_pre_key_created_at: datetime
    previous_signed_pre_keys: List[RetiredSignedPreKey] = field(default_factory=list)
    one_time_pre_keys: List[PreKeyPair] = field(default_factory=list)
    issued_one_time_pre_keys: List[PreKeyPair] = field(default_factory=list)
    next_pre_key_id: int = 1

    @classmethod
    def from_row(cls, row: E2EEKeys) -> "KeyMaterial":
        uid = row.user_id

        def pairs(name: str, value: str) -> List[PreKeyPair]:
            result = []
            for entry in _load_json_list(E2EEKeys, uid, name, value):
                try:
                    key_id = int(entry['id'])
                    private, public = entry['private'], entry['public']
                    issued_at = entry.get('issued_at')
                    issued_at = datetime.fromisoformat(issued_at) if issued_at is not None else None
                except (AttributeError, KeyError, TypeError, ValueError):
                    raise _CorruptRecord(E2EEKeys, uid, f"{name} entry is malformed")
                result.append(PreKeyPair(
                    key_id=key_id,
                    private=_decode(E2EEKeys, uid, name, private, KEY_SIZE),
                    public=_decode(E2EEKeys, uid, name, public, KEY_SIZE),
                    issued_at=issued_at,
                ))
            return result

        retired = []
        for entry in _load_json_list(E2EEKeys, uid, "previous_signed_pre_keys", row.previous_signed_pre_keys):
            try:
                retired.append(RetiredSignedPreKey(
                    key_id=int(entry['id']),
                    private=_decode(E2EEKeys, uid, "previous signed pre-key", entry['private'], KEY_SIZE),
                    public=_decode(E2EEKeys, uid, "previous signed pre-key", entry['public'], KEY_SIZE),
                    signature=_decode(E2EEKeys, uid, "previous signature", entry['signature'], SIGNATURE_SIZE),
                    retired_at=datetime.fromisoformat(entry['retired_at']),
                ))
            except (KeyError, TypeError, ValueError):
                raise _CorruptRecord(E2EEKeys, uid, "previous signed pre-key entry is malformed")

        return cls(
            user_id=uid,
            identity_private=_decode(E2EEKeys, uid, "identity_private", row.identity_private, KEY_SIZE),
            identity_public=_decode(E2EEKeys, uid, "identity_public", row.identity_public, KEY_SIZE),
            signing_private=_decode(E2EEKeys, uid, "signing_private", row.signing_private, KEY_SIZE),
            signing_public=_decode(E2EEKeys, uid, "signing_public", row.signing_public, KEY_SIZE),
            signed_pre_key_id=row.signed_pre_key_id,
            signed_pre_key_private=_decode(E2EEKeys, uid, "signed_pre_key_private", row.signed_pre_key_private, KEY_SIZE),
            signed_pre_key_public=_decode(E2EEKeys, uid, "signed_pre_key_public", row.signed_pre_key_public, KEY_SIZE),
            signed_pre_key_signature=_decode(E2EEKeys, uid, "signed_pre_key_signature",
                                             row.signed_pre_key_signature, SIGNATURE_SIZE),
            signed_pre_key_created_at=row.signed_pre_key_created_at or _utcnow(),
            previous_signed_pre_keys=retired,
            one_time_pre_keys=pairs("one_time_pre_keys", row.one_time_pre_keys),
            issued_one_time_pre_keys=pairs("issued_one_time_pre_keys", row.issued_one_time_pre_keys),
            next_pre_key_id=row.next_pre_key_id or 1,
        )

    def write_pools(self, row: E2EEKeys):
        row.one_time_pre_keys = json.dumps([k.to_dict() for k in self.one_time_pre_keys])
        row.issued_one_time_pre_keys = json.dumps([k.to_dict() for k in self.issued_one_time_pre_keys])
        row.next_pre_key_id = self.next_pre_key_id

    def purge_issued(self, ttl: timedelta) -> int:
        """Drop handed-out one-time pre-keys no session consumed within ``ttl``"""
        cutoff = _utcnow() - ttl
        kept = [k for k in self.issued_one_time_pre_keys if k.issued_at is not None and k.issued_at > cutoff]
        expired = len(self.issued_one_time_pre_keys) - len(kept)
        self.issued_one_time_pre_keys = kept
        return expired

    def bundle(self, one_time: Optional[PreKeyPair] = None) -> PublicBundle:
        return PublicBundle(
            identity_public=self.identity_public,
            identity_signing_public=self.signing_public,
            signed_pre_key_id=self.signed_pre_key_id,
            signed_pre_key_public=self.signed_pre_key_public,
            signed_pre_key_signature=self.signed_pre_key_signature,
            one_time_pre_key_id=one_time.key_id if one_time else None,
            one_time_pre_key_public=one_time.public if one_time else None,
        )

    def signed_pre_key_private_for(self, key_id: int, grace: timedelta) -> X25519PrivateKey:
        """Current signed pre-key, or a retired one still inside the grace window"""
        if key_id == self.signed_pre_key_id:
            return deserialize_private_key(self.signed_pre_key_private)
        for retired in self.previous_signed_pre_keys:
            if retired.key_id == key_id:
                if retired.retired_at + grace < _utcnow():
                    raise InvalidKeyError(f"signed pre-key {key_id} is past its grace window")
                return deserialize_private_key(retired.private)
        raise InvalidKeyError(f"unknown signed pre-key {key_id}")


def generate_one_time_pre_keys(first_id: int, count: int) -> List[PreKeyPair]:
    """
    Generate one-time pre-keys.

    Args:
        first_id: Identifier of the first key
        count: Number of keys to generate

    Returns:
        List of PreKeyPair
    """
    keys = []
    for offset in range(count):
        private, public = generate_dh_keypair()
        keys.append(PreKeyPair(
            key_id=first_id + offset,
            private=serialize_private_key(private),
            public=serialize_public_key(public),
        ))
    return keys


@dataclass
class SessionHandle:
    """
    One participant's view of a session.

    Attributes:
        session_id: Stable session identifier
        owner_id: Participant whose ratchet state this is
        peer_id: The other participant
        user_a: Lexicographically lower participant id
        user_b: Lexicographically higher participant id
        state: Owner's ratchet state (a private copy)
        created_at: Session creation time
    """
    session_id: str
    owner_id: str
    peer_id: str
    user_a: str
    user_b: str
    state: RatchetState
    created_at: datetime

    @property
    def owner_is_a(self) -> bool:
        return self.owner_id == self.user_a


class KeyStore:
    """
    Durable key material and session state with per-user locking.

    Writers on a user's key row (initialise, bundle hand-out, replenish,
    rotation, deletion) exclude each other and readers; readers proceed in
    parallel. Session creation is serialised per user pair.
    """

    def __init__(self, database_url: Optional[str] = None, config: Optional[E2EEConfig] = None,
                 replenish_scheduler: Optional[Callable[[str], None]] = None):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy async database URL (defaults to ``config.database_url``)
            config: Tunables; defaults to ``E2EEConfig()``
            replenish_scheduler: Called with a user id when that user's pool runs low;
                defaults to running ``replenish_one_time_pre_keys`` as a background task
        """
        self.config = config or E2EEConfig()
        self.database_url = database_url or self.config.database_url
        engine_args = {"echo": False}
        if ":memory:" in self.database_url:
            engine_args.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
        self.engine = create_async_engine(self.database_url, **engine_args)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.key_agreement = KeyAgreement()
        self._user_locks = KeyedLocks(ReadWriteLock)
        self._pair_locks = KeyedLocks()
        self._session_locks = KeyedLocks()
        self._replenish_scheduler = replenish_scheduler or self._schedule_replenish
        self._replenishing = set()
        self._background = set()

    async def create_tables(self):
        """Create all tables"""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StorageError(f"create_tables: {type(e).__name__}")

    async def close(self):
        """Wait for background replenishment and release connections"""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.engine.dispose()

    # -- transactions -------------------------------------------------------

    @asynccontextmanager
    async def _transaction(self):
        """One transaction; store failures surface as StorageError, corruption as KeyIntegrityError"""
        try:
            async with self.async_session() as session:
                async with session.begin():
                    yield session
        except _CorruptRecord as e:
            await self._quarantine(e)
            raise KeyIntegrityError(e.reason)
        except SQLAlchemyError as e:
            raise StorageError(f"{type(e).__name__}: {e}")

    async def _quarantine(self, corrupt: _CorruptRecord):
        model = corrupt.model
        primary = model.user_id if model is E2EEKeys else model.id
        try:
            async with self.async_session() as session:
                async with session.begin():
                    await session.execute(
                        update(model).where(primary == corrupt.key).values(quarantined=True)
                    )
        except SQLAlchemyError as e:
            raise StorageError(f"quarantine failed: {type(e).__name__}")
        logger.warning("Quarantined corrupted %s record %s", model.__tablename__, corrupt.key)

    async def _key_row(self, session: AsyncSession, user_id: str) -> E2EEKeys:
        result = await session.execute(select(E2EEKeys).where(E2EEKeys.user_id == user_id))
        row = result.scalar_one_or_none()
        if row is None:
            raise UnknownUserError(f"no key record for {user_id}")
        if row.quarantined:
            raise KeyIntegrityError(f"key record for {user_id} is quarantined")
        return row

    async def _read_material(self, user_id: str) -> KeyMaterial:
        async with self._user_locks.get(user_id).read():
            async with self._transaction() as session:
                return KeyMaterial.from_row(await self._key_row(session, user_id))

    # -- C1 key operations --------------------------------------------------

    async def initialise_user_keys(self, user_id: str) -> PublicBundle:
        """
        Create a user's key material if absent.

        Idempotent: a second call returns the current bundle (without a
        one-time pre-key and without consuming one).

        Returns:
            PublicBundle of the user
        """
        async with self._user_locks.get(user_id).write():
            async with self._transaction() as session:
                result = await session.execute(select(E2EEKeys).where(E2EEKeys.user_id == user_id))
                row = result.scalar_one_or_none()
                if row is not None:
                    if row.quarantined:
                        raise KeyIntegrityError(f"key record for {user_id} is quarantined")
                    return KeyMaterial.from_row(row).bundle()

                identity_private, identity_public = generate_dh_keypair()
                signing_private, signing_public = generate_signing_keypair()
                spk_private, spk_public = generate_dh_keypair()
                spk_public_bytes = serialize_public_key(spk_public)
                count = self.config.one_time_pre_key_count
                one_time = generate_one_time_pre_keys(1, count)
                now = _utcnow()

                row = E2EEKeys(
                    user_id=user_id,
                    identity_private=b64encode(serialize_private_key(identity_private)),
                    identity_public=b64encode(serialize_public_key(identity_public)),
                    signing_private=b64encode(serialize_private_key(signing_private)),
                    signing_public=b64encode(serialize_public_key(signing_public)),
                    signed_pre_key_id=1,
                    signed_pre_key_private=b64encode(serialize_private_key(spk_private)),
                    signed_pre_key_public=b64encode(spk_public_bytes),
                    signed_pre_key_signature=b64encode(sign(signing_private, spk_public_bytes)),
                    signed_pre_key_created_at=now,
                    previous_signed_pre_keys="[]",
                    one_time_pre_keys=json.dumps([k.to_dict() for k in one_time]),
                    issued_one_time_pre_keys="[]",
                    next_pre_key_id=count + 1,
                    quarantined=False,
                    created_at=now,
                )
                session.add(row)
                await session.flush()
                bundle = KeyMaterial.from_row(row).bundle()

        logger.info("Initialised E2EE keys for user %s (%d one-time pre-keys)", user_id, count)
        return bundle

    async def get_bundle(self, user_id: str) -> PublicBundle:
        """
        Hand out a bundle, atomically removing its one-time pre-key from the pool.

        The handed-out key moves to the issued set, where session creation
        consumes its private half exactly once. Issued keys nobody consumed
        within ``signed_pre_key_grace`` are destroyed, and at most
        ``one_time_pre_key_count`` of them are kept, oldest dropped first.

        Raises:
            UnknownUserError: If the user has no key record
            PreKeyExhaustedError: If the pool is empty and weak bundles are not allowed
        """
        async with self._user_locks.get(user_id).write():
            async with self._transaction() as session:
                row = await self._key_row(session, user_id)
                material = KeyMaterial.from_row(row)
                expired = material.purge_issued(self.config.signed_pre_key_grace)
                one_time = None
                if material.one_time_pre_keys:
                    one_time = material.one_time_pre_keys.pop(0)
                    one_time.issued_at = _utcnow()
                    material.issued_one_time_pre_keys.append(one_time)
                    del material.issued_one_time_pre_keys[:-self.config.one_time_pre_key_count]
                    material.write_pools(row)
                elif expired:
                    material.write_pools(row)
                if one_time is None and not self.config.allow_weak_bundles:
                    raise PreKeyExhaustedError(f"one-time pool of {user_id} is empty")
                remaining = len(material.one_time_pre_keys)
                bundle = material.bundle(one_time)

        if remaining < self.config.low_water_mark or one_time is None:
            self._request_replenish(user_id)
        return bundle

    async def one_time_pre_key_count(self, user_id: str) -> int:
        """Number of one-time pre-keys still available for hand-out"""
        material = await self._read_material(user_id)
        return len(material.one_time_pre_keys)

    def _request_replenish(self, user_id: str):
        if user_id in self._replenishing:
            return
        self._replenish_scheduler(user_id)

    def _schedule_replenish(self, user_id: str):
        self._replenishing.add(user_id)
        task = asyncio.get_running_loop().create_task(self._background_replenish(user_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_replenish(self, user_id: str):
        try:
            await self.replenish_one_time_pre_keys(user_id)
        except E2EEError as e:
            logger.warning("Background replenish for %s failed: %s", user_id, e.code)
        finally:
            self._replenishing.discard(user_id)

    async def replenish_one_time_pre_keys(self, user_id: str) -> int:
        """
        Top the one-time pool up to the configured size.
        Issued keys past their grace window are dropped on the way.

        Returns:
            Number of keys added
        """
        async with self._user_locks.get(user_id).write():
            async with self._transaction() as session:
                row = await self._key_row(session, user_id)
                material = KeyMaterial.from_row(row)
                expired = material.purge_issued(self.config.signed_pre_key_grace)
                missing = self.config.one_time_pre_key_count - len(material.one_time_pre_keys)
                if missing <= 0:
                    if expired:
                        material.write_pools(row)
                    return 0
                material.one_time_pre_keys.extend(
                    generate_one_time_pre_keys(material.next_pre_key_id, missing)
                )
                material.next_pre_key_id += missing
                material.write_pools(row)

        logger.info("Replenished %d one-time pre-keys for user %s", missing, user_id)
        return missing

    async def rotate_signed_pre_key(self, user_id: str) -> SignedPreKeyPublic:
        """
        Replace the signed pre-key, keeping the previous one for the grace window.

        Returns:
            SignedPreKeyPublic of the new key
        """
        async with self._user_locks.get(user_id).write():
            async with self._transaction() as session:
                row = await self._key_row(session, user_id)
                material = KeyMaterial.from_row(row)
                now = _utcnow()
                grace = self.config.signed_pre_key_grace

                retired = [r for r in material.previous_signed_pre_keys if r.retired_at + grace >= now]
                retired.append(RetiredSignedPreKey(
                    key_id=material.signed_pre_key_id,
                    private=material.signed_pre_key_private,
                    public=material.signed_pre_key_public,
                    signature=material.signed_pre_key_signature,
                    retired_at=now,
                ))

                signing_private = deserialize_signing_private_key(material.signing_private)
                spk_private, spk_public = generate_dh_keypair()
                spk_public_bytes = serialize_public_key(spk_public)
                rotated = SignedPreKeyPublic(
                    key_id=material.signed_pre_key_id + 1,
                    public_key=spk_public_bytes,
                    signature=sign(signing_private, spk_public_bytes),
                )

                row.signed_pre_key_id = rotated.key_id
                row.signed_pre_key_private = b64encode(serialize_private_key(spk_private))
                row.signed_pre_key_public = b64encode(rotated.public_key)
                row.signed_pre_key_signature = b64encode(rotated.signature)
                row.signed_pre_key_created_at = now
                row.previous_signed_pre_keys = json.dumps([r.to_dict() for r in retired])

        logger.info("Rotated signed pre-key for user %s (now id %d)", user_id, rotated.key_id)
        return rotated

    async def signed_pre_key_age(self, user_id: str) -> timedelta:
        material = await self._read_material(user_id)
        return _utcnow() - material.signed_pre_key_created_at

    async def get_identity_public(self, user_id: str) -> bytes:
        material = await self._read_material(user_id)
        return material.identity_public

    async def delete_user_keys(self, user_id: str) -> bool:
        """
        Destroy a user's key record (account deletion).

        Sessions go only once neither participant has a key record.

        Returns:
            True if a record was deleted
        """
        async with self._user_locks.get(user_id).write():
            async with self._transaction() as session:
                result = await session.execute(delete(E2EEKeys).where(E2EEKeys.user_id == user_id))
                deleted = result.rowcount > 0

                sessions = await session.execute(
                    select(E2EESession).where(or_(E2EESession.user_a == user_id, E2EESession.user_b == user_id))
                )
                for record in sessions.scalars().all():
                    peer = record.user_b if record.user_a == user_id else record.user_a
                    peer_row = await session.execute(select(E2EEKeys.user_id).where(E2EEKeys.user_id == peer))
                    if peer_row.scalar_one_or_none() is None:
                        await session.delete(record)

        if deleted:
            logger.info("Deleted E2EE keys for user %s", user_id)
        return deleted

    # -- sessions -----------------------------------------------------------

    def session_lock(self, session_id: str) -> asyncio.Lock:
        """Mutex serialising chain advances of one session"""
        return self._session_locks.get(session_id)

    def _handle(self, record: E2EESession, owner_id: str) -> SessionHandle:
        if owner_id not in (record.user_a, record.user_b):
            raise UnknownSessionError(f"{owner_id} is not a participant of {record.id}")
        if record.quarantined:
            raise KeyIntegrityError(f"session {record.id} is quarantined")
        raw_state = record.state_a if owner_id == record.user_a else record.state_b
        try:
            state = RatchetState.import_state(raw_state)
        except ValueError as e:
            raise _CorruptRecord(E2EESession, record.id, str(e))
        return SessionHandle(
            session_id=record.id,
            owner_id=owner_id,
            peer_id=record.user_b if owner_id == record.user_a else record.user_a,
            user_a=record.user_a,
            user_b=record.user_b,
            state=state,
            created_at=record.created_at,
        )

    async def find_session(self, user_a: str, user_b: str) -> Optional[SessionHandle]:
        """Session between the pair as seen by ``user_a``, or None"""
        first, second = session_pair(user_a, user_b)
        async with self._transaction() as session:
            result = await session.execute(
                select(E2EESession).where(E2EESession.user_a == first, E2EESession.user_b == second)
            )
            record = result.scalar_one_or_none()
            return self._handle(record, user_a) if record else None

    async def get_session(self, session_id: str, owner_id: str) -> SessionHandle:
        """
        Load a session by id as seen by ``owner_id``.

        Raises:
            UnknownSessionError: If the session does not exist or ``owner_id`` is not part of it
        """
        async with self._transaction() as session:
            record = await session.get(E2EESession, session_id)
            if record is None:
                raise UnknownSessionError(f"no session {session_id}")
            return self._handle(record, owner_id)

    async def get_or_create_session(self, user_a: str, user_b: str) -> SessionHandle:
        """
        Return the pair's session as seen by ``user_a``, creating it if needed.

        Creation runs the key agreement with ``user_a`` as initiator against
        a freshly handed-out bundle of ``user_b``, completes the responder
        half and persists both participants' ratchet state.
        """
        if user_a == user_b:
            raise UnknownSessionError("a session needs two distinct users")

        async with self._pair_locks.get(session_pair(user_a, user_b)):
            existing = await self.find_session(user_a, user_b)
            if existing is not None:
                return existing

            initiator = await self._read_material(user_a)
            bundle = await self.get_bundle(user_b)
            result = self.key_agreement.initiate_session(
                deserialize_private_key(initiator.identity_private), bundle
            )
            try:
                responder_secrets = await self._complete_as_responder(
                    user_b, initiator.identity_public, result.ephemeral_public,
                    result.signed_pre_key_id, result.one_time_pre_key_id,
                )
                try:
                    self.key_agreement.confirm(result, responder_secrets)
                    handle = await self._store_new_session(user_a, user_b, result)
                finally:
                    wipe(responder_secrets[0])
                    wipe(responder_secrets[1])
            finally:
                wipe(result.root_key)
                wipe(result.chain_key)

        logger.info("Created E2EE session %s between %s and %s", handle.session_id, user_a, user_b)
        return handle

    async def _complete_as_responder(self, user_id: str, initiator_identity: bytes, ephemeral_public: bytes,
                                     signed_pre_key_id: int, one_time_pre_key_id: Optional[int]
                                     ) -> Tuple[bytearray, bytearray]:
        async with self._user_locks.get(user_id).write():
            async with self._transaction() as session:
                row = await self._key_row(session, user_id)
                material = KeyMaterial.from_row(row)
                one_time_private = None
                if one_time_pre_key_id is not None:
                    issued = [k for k in material.issued_one_time_pre_keys if k.key_id == one_time_pre_key_id]
                    if not issued:
                        raise PreKeyReuseError(f"one-time pre-key {one_time_pre_key_id} of {user_id}")
                    material.issued_one_time_pre_keys.remove(issued[0])
                    material.write_pools(row)
                    one_time_private = deserialize_private_key(issued[0].private)

                return self.key_agreement.complete_session(
                    deserialize_private_key(material.identity_private),
                    material.signed_pre_key_private_for(signed_pre_key_id, self.config.signed_pre_key_grace),
                    one_time_private,
                    initiator_identity,
                    ephemeral_public,
                )

    async def _store_new_session(self, initiator_id: str, responder_id: str, result) -> SessionHandle:
        first, second = session_pair(initiator_id, responder_id)
        initiator_state = RatchetState(*initial_chains(result.root_key, result.chain_key, initiator=True))
        responder_state = RatchetState(*initial_chains(result.root_key, result.chain_key, initiator=False))
        states = {initiator_id: initiator_state, responder_id: responder_state}
        session_id = f"session_{int(time.time())}_{secrets.token_hex(8)}"

        record = E2EESession(
            id=session_id,
            user_a=first,
            user_b=second,
            initiator_id=initiator_id,
            ephemeral_public=b64encode(result.ephemeral_public),
            signed_pre_key_id=result.signed_pre_key_id,
            one_time_pre_key_id=result.one_time_pre_key_id,
            state_a=states[first].export_state(),
            state_b=states[second].export_state(),
            quarantined=False,
            created_at=_utcnow(),
        )
        async with self._transaction() as session:
            session.add(record)

        handle = SessionHandle(
            session_id=session_id,
            owner_id=initiator_id,
            peer_id=responder_id,
            user_a=first,
            user_b=second,
            state=initiator_state,
            created_at=record.created_at,
        )
        responder_state.wipe()
        return handle

    async def update_session_chains(self, handle: SessionHandle, sending_chain: bytearray,
                                    receiving_chain: bytearray, counters: ChainCounters):
        """
        Atomically replace the owner's mutable ratchet state.

        Raises:
            UnknownSessionError: If the session was reset meanwhile
        """
        state_json = RatchetState(
            sending_chain=sending_chain, receiving_chain=receiving_chain, counters=counters
        ).export_state()
        column = E2EESession.state_a if handle.owner_is_a else E2EESession.state_b
        async with self._transaction() as session:
            result = await session.execute(
                update(E2EESession)
                .where(E2EESession.id == handle.session_id)
                .values({column: state_json, E2EESession.updated_at: _utcnow()})
            )
            if result.rowcount == 0:
                raise UnknownSessionError(f"session {handle.session_id} no longer exists")

    async def reset_session(self, user_a: str, user_b: str) -> Optional[str]:
        """
        Delete the pair's session.

        Returns:
            The deleted session id, or None if there was none
        """
        first, second = session_pair(user_a, user_b)
        async with self._pair_locks.get((first, second)):
            async with self._transaction() as session:
                result = await session.execute(
                    select(E2EESession.id).where(E2EESession.user_a == first, E2EESession.user_b == second)
                )
                session_id = result.scalar_one_or_none()
            if session_id is None:
                return None
            async with self.session_lock(session_id):
                async with self._transaction() as session:
                    await session.execute(delete(E2EESession).where(E2EESession.id == session_id))

        logger.info("Reset E2EE session %s", session_id)
        return session_id
