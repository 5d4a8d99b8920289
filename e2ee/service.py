"""
E2EE Service

The operations applications call: key initialisation, bundle hand-out,
encrypt, decrypt, safety numbers and key rotation. The service owns the
in-memory skipped-key cache and drives the ratchet and codec over a key
store passed in at construction.

Every failure leaves the service as an ``E2EEError`` subclass and is
recorded on the local debug sink first.
"""

import asyncio
import logging
from typing import Dict, Optional, Tuple, Union

from .codec import open_envelope, parse_envelope, seal
from .config import E2EEConfig
from .diagnostics import configure_debug_sink, record_failure
from .envelope import AnyEnvelope, Envelope, FallbackEnvelope, MessageMetadata, SecurityLevel
from .errors import E2EEError, MalformedEnvelopeError, StorageError, UnknownSessionError
from .key_agreement import PublicBundle, SignedPreKeyPublic
from .ratchet import Ratchet, SkippedKeyCache
from .safety_number import compute_safety_number

logger = logging.getLogger(__name__)

EnvelopeInput = Union[Envelope, FallbackEnvelope, Dict, str, bytes]


class E2EEService:
    """
    End-to-end encryption over a key store.

    Args:
        store: Key store capability (``server.database.KeyStore`` or compatible)
        config: Tunables; defaults to the store's config
    """

    def __init__(self, store, config: Optional[E2EEConfig] = None):
        self.store = store
        self.config = config or getattr(store, "config", None) or E2EEConfig()
        self.skipped = SkippedKeyCache(max_entries=4 * self.config.skip_window)
        if self.config.debug_sink:
            configure_debug_sink(True)

    async def _call(self, operation: str, awaitable, timeout: Optional[float]):
        try:
            if timeout is None:
                return await awaitable
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError:
            error = StorageError(f"{operation} exceeded its {timeout}s deadline")
            record_failure(error, operation)
            raise error from None
        except E2EEError as e:
            record_failure(e, operation)
            raise

    # -- keys ---------------------------------------------------------------

    async def initialise_user_keys(self, user_id: str, timeout: Optional[float] = None) -> PublicBundle:
        return await self._call("initialise_user_keys", self.store.initialise_user_keys(user_id), timeout)

    async def get_bundle(self, user_id: str, timeout: Optional[float] = None) -> PublicBundle:
        return await self._call("get_bundle", self.store.get_bundle(user_id), timeout)

    async def rotate_signed_pre_key(self, user_id: str, timeout: Optional[float] = None) -> SignedPreKeyPublic:
        return await self._call("rotate_signed_pre_key", self.store.rotate_signed_pre_key(user_id), timeout)

    async def rotate_signed_pre_key_if_due(self, user_id: str,
                                           timeout: Optional[float] = None) -> Optional[SignedPreKeyPublic]:
        """Rotate only when the signed pre-key is older than the configured maximum age"""
        async def rotate_if_due():
            age = await self.store.signed_pre_key_age(user_id)
            if age < self.config.signed_pre_key_max_age:
                return None
            return await self.store.rotate_signed_pre_key(user_id)

        return await self._call("rotate_signed_pre_key_if_due", rotate_if_due(), timeout)

    async def delete_user_keys(self, user_id: str, timeout: Optional[float] = None) -> bool:
        return await self._call("delete_user_keys", self.store.delete_user_keys(user_id), timeout)

    # -- messages -----------------------------------------------------------

    async def encrypt_message(self, sender_id: str, recipient_id: str, plaintext: Union[bytes, str],
                              associated_metadata: Optional[str] = None,
                              timeout: Optional[float] = None) -> Envelope:
        """
        Encrypt a message for a recipient.

        Creates the pair's session on first use. The sending chain advance
        is persisted before the envelope is returned, so every call uses a
        fresh message number.

        Args:
            sender_id: Sending user
            recipient_id: Receiving user
            plaintext: Message bytes (str is encoded as UTF-8)
            associated_metadata: Opaque string authenticated with the message
            timeout: Deadline in seconds for the whole operation

        Returns:
            Envelope with security level ``MILITARY_GRADE``
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        return await self._call(
            "encrypt_message",
            self._encrypt(sender_id, recipient_id, plaintext, associated_metadata or ""),
            timeout,
        )

    async def _encrypt(self, sender_id: str, recipient_id: str, plaintext: bytes, metadata: str) -> Envelope:
        if sender_id == recipient_id:
            raise UnknownSessionError("a user has no session with themselves")
        created = await self.store.get_or_create_session(sender_id, recipient_id)
        created.state.wipe()

        async with self.store.session_lock(created.session_id):
            handle = await self.store.get_session(created.session_id, sender_id)
            state = handle.state
            ratchet = Ratchet(handle.session_id, state, self.skipped, self.config.skip_window)
            keys = None
            try:
                number, keys = ratchet.next_sending_keys()
                envelope = seal(keys, sender_id, recipient_id, handle.session_id, number, plaintext, metadata)
                await self.store.update_session_chains(
                    handle, state.sending_chain, state.receiving_chain, state.counters
                )
            finally:
                if keys is not None:
                    keys.wipe()
                state.wipe()
        return envelope

    async def decrypt_message(self, envelope: EnvelopeInput,
                              timeout: Optional[float] = None) -> Tuple[bytes, Union[MessageMetadata, FallbackEnvelope]]:
        """
        Decrypt an envelope addressed to its ``recipientId``.

        A legacy fallback string is not decrypted: its embedded text is
        returned together with a ``FallbackEnvelope`` tagged ``FALLBACK``.

        Returns:
            Tuple of (plaintext bytes, MessageMetadata or FallbackEnvelope)

        Raises:
            UnsupportedVersionError, MalformedEnvelopeError, UnknownSessionError,
            ReplayError, StaleMessageError, KeyDerivationError, IntegrityError,
            AuthenticityError, StorageError
        """
        return await self._call("decrypt_message", self._decrypt(envelope), timeout)

    async def _decrypt(self, raw: EnvelopeInput):
        envelope = parse_envelope(raw)
        if isinstance(envelope, FallbackEnvelope):
            return envelope.plaintext.encode("utf-8"), envelope
        if envelope.security_level != SecurityLevel.MILITARY_GRADE:
            raise MalformedEnvelopeError(f"structured envelope with level {envelope.security_level.value}")

        async with self.store.session_lock(envelope.session_id):
            handle = await self.store.get_session(envelope.session_id, envelope.recipient_id)
            if handle.peer_id != envelope.sender_id:
                handle.state.wipe()
                raise UnknownSessionError(f"{envelope.sender_id} is not the peer in {envelope.session_id}")

            number = envelope.message_number
            ratchet = Ratchet(handle.session_id, handle.state, self.skipped, self.config.skip_window)
            keys = None
            committed = False
            try:
                ratchet.check_replay(number)
                keys = ratchet.receiving_keys(number)
                plaintext = open_envelope(envelope, keys)
                ratchet.mark_delivered(number)
                state = ratchet.state
                await self.store.update_session_chains(
                    handle, state.sending_chain, state.receiving_chain, state.counters
                )
                ratchet.commit()
                committed = True
            finally:
                if keys is not None:
                    keys.wipe()
                if not committed:
                    ratchet.abandon()
                handle.state.wipe()

        return plaintext, MessageMetadata(
            security_level=SecurityLevel.MILITARY_GRADE,
            sender_id=envelope.sender_id,
            recipient_id=envelope.recipient_id,
            session_id=envelope.session_id,
            message_number=number,
            metadata=envelope.metadata,
        )

    def parse(self, raw: EnvelopeInput) -> AnyEnvelope:
        """Parse without decrypting (used to route an envelope to its recipient)"""
        try:
            return parse_envelope(raw)
        except E2EEError as e:
            record_failure(e, "parse")
            raise

    # -- sessions -----------------------------------------------------------

    async def reset_session(self, user_a: str, user_b: str, timeout: Optional[float] = None) -> bool:
        """Drop the pair's session; the next encrypt starts a new one"""
        session_id = await self._call("reset_session", self.store.reset_session(user_a, user_b), timeout)
        if session_id is None:
            return False
        self.skipped.purge_session(session_id)
        return True

    async def compute_safety_number(self, user_a: str, user_b: str, timeout: Optional[float] = None) -> str:
        """
        Fingerprint of the two users' identity keys.

        Raises:
            UnknownUserError: If either user has no key record
        """
        async def fingerprint():
            identity_a = await self.store.get_identity_public(user_a)
            identity_b = await self.store.get_identity_public(user_b)
            return compute_safety_number(identity_a, identity_b)

        return await self._call("compute_safety_number", fingerprint(), timeout)

    def security_status(self) -> Dict:
        return {
            'encryptionAlgorithm': "AES-256-GCM",
            'keyAgreement': "X25519 (3-4 DH, X3DH-style)",
            'signatureAlgorithm': "Ed25519",
            'keyDerivation': "HKDF-SHA-256",
            'chainAdvance': "HMAC-SHA-256",
            'integrityHash': "SHA-256",
            'forwardSecrecy': True,
            'replayProtection': True,
            'skipWindow': self.config.skip_window,
            'oneTimePreKeyCount': self.config.one_time_pre_key_count,
            'signedPreKeyMaxAgeHours': self.config.signed_pre_key_max_age.total_seconds() / 3600,
            'securityLevel': SecurityLevel.MILITARY_GRADE.value,
        }
