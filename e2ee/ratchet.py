"""
Symmetric-key Ratchet

Produces a unique (encryption key, authentication key) pair for every
message of a session and advances the chain with a one-way step, so a
snapshot of the current chain key reveals nothing about earlier messages.

Receivers tolerate out-of-order delivery within a skip window by caching
the keys of skipped message numbers in memory, and reject replays using a
sliding bitmap of delivered numbers.
"""

import json
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from .errors import KeyDerivationError, ReplayError, StaleMessageError
from .primitives import KEY_SIZE, hkdf_sha256, hmac_sha256, wipe

MESSAGE_KEY_INFO = b"vaultke-e2ee-msg-v1"
CHAIN_ADVANCE_CONSTANT = b"\x02"
MAX_MESSAGE_NUMBER = 2 ** 32 - 1
DEFAULT_SKIP_WINDOW = 1024


@dataclass
class MessageKeys:
    """Per-message keys; never persisted"""
    encryption_key: bytearray
    authentication_key: bytearray

    def wipe(self):
        wipe(self.encryption_key)
        wipe(self.authentication_key)


def derive_message_keys(chain_key: bytearray, message_number: int) -> MessageKeys:
    """
    Derive the message keys for ``message_number`` from a chain key.

    Args:
        chain_key: Current 32-byte chain key
        message_number: Message number, used as a 4-byte big-endian salt

    Returns:
        MessageKeys with 32-byte encryption and authentication keys
    """
    if message_number < 0 or message_number > MAX_MESSAGE_NUMBER:
        raise KeyDerivationError(f"message number {message_number} out of range")
    output = hkdf_sha256(chain_key, 64, MESSAGE_KEY_INFO, salt=message_number.to_bytes(4, "big"))
    keys = MessageKeys(encryption_key=output[:32], authentication_key=output[32:])
    wipe(output)
    return keys


def advance_chain(chain_key: bytearray) -> bytearray:
    """CK' = HMAC-SHA-256(CK, 0x02); the old chain key is overwritten"""
    next_key = bytearray(hmac_sha256(chain_key, CHAIN_ADVANCE_CONSTANT))
    wipe(chain_key)
    return next_key


@dataclass
class ChainCounters:
    """
    Counters and replay summary of one participant's view of a session.

    Attributes:
        send_count: Number of the next message this participant sends
        recv_count: Number of the next message expected on the receiving chain
        delivered_high: Highest delivered message number, -1 if none
        delivered_bitmap: Bit i set means ``delivered_high - i`` was delivered
    """
    send_count: int = 0
    recv_count: int = 0
    delivered_high: int = -1
    delivered_bitmap: int = 0


@dataclass
class RatchetState:
    """Mutable ratchet state of one participant's view of a session"""
    sending_chain: bytearray
    receiving_chain: bytearray
    counters: ChainCounters = field(default_factory=ChainCounters)

    def copy(self) -> "RatchetState":
        return RatchetState(
            sending_chain=bytearray(self.sending_chain),
            receiving_chain=bytearray(self.receiving_chain),
            counters=ChainCounters(**vars(self.counters)),
        )

    def wipe(self):
        wipe(self.sending_chain)
        wipe(self.receiving_chain)

    def export_state(self) -> str:
        """
        Export ratchet state for persistence.

        Returns:
            JSON string of serialized state
        """
        return json.dumps({
            'sending_chain': self.sending_chain.hex(),
            'receiving_chain': self.receiving_chain.hex(),
            'send_count': self.counters.send_count,
            'recv_count': self.counters.recv_count,
            'delivered_high': self.counters.delivered_high,
            'delivered_bitmap': format(self.counters.delivered_bitmap, 'x'),
        })

    @classmethod
    def import_state(cls, state_json: str) -> "RatchetState":
        """
        Import ratchet state from persistence.

        Raises:
            ValueError: If the stored state is not well formed
        """
        try:
            state_dict = json.loads(state_json)
            state = cls(
                sending_chain=bytearray.fromhex(state_dict['sending_chain']),
                receiving_chain=bytearray.fromhex(state_dict['receiving_chain']),
                counters=ChainCounters(
                    send_count=int(state_dict['send_count']),
                    recv_count=int(state_dict['recv_count']),
                    delivered_high=int(state_dict['delivered_high']),
                    delivered_bitmap=int(state_dict['delivered_bitmap'], 16),
                ),
            )
        except (KeyError, TypeError, ValueError, json.JSONDecodeError) as e:
            raise ValueError(f"malformed ratchet state: {e}")
        if len(state.sending_chain) != KEY_SIZE or len(state.receiving_chain) != KEY_SIZE:
            raise ValueError("chain key has wrong length")
        if min(state.counters.send_count, state.counters.recv_count) < 0:
            raise ValueError("negative counter")
        return state


class SkippedKeyCache:
    """
    In-memory cache of message keys for skipped message numbers.

    Keyed by (session id, message number). The oldest entries are evicted
    and wiped once ``max_entries`` is exceeded.
    """

    def __init__(self, max_entries: int = 4 * DEFAULT_SKIP_WINDOW):
        self.max_entries = max_entries
        self._keys: "OrderedDict[Tuple[str, int], MessageKeys]" = OrderedDict()

    def __len__(self):
        return len(self._keys)

    def __contains__(self, item):
        return item in self._keys

    def get(self, session_id: str, message_number: int) -> Optional[MessageKeys]:
        return self._keys.get((session_id, message_number))

    def store(self, session_id: str, keys: Dict[int, MessageKeys]):
        for number, message_keys in keys.items():
            self._keys[(session_id, number)] = message_keys
        while len(self._keys) > self.max_entries:
            _, evicted = self._keys.popitem(last=False)
            evicted.wipe()

    def discard(self, session_id: str, message_number: int):
        message_keys = self._keys.pop((session_id, message_number), None)
        if message_keys is not None:
            message_keys.wipe()

    def purge_session(self, session_id: str):
        for key in [k for k in self._keys if k[0] == session_id]:
            self._keys.pop(key).wipe()


class Ratchet:
    """
    Ratchet operations over one participant's view of a session.

    Receiving-side derivations are staged: skipped keys collect in
    ``pending_skipped`` and only reach the shared cache via ``commit``.
    """

    def __init__(self, session_id: str, state: RatchetState, skipped: SkippedKeyCache,
                 skip_window: int = DEFAULT_SKIP_WINDOW):
        self.session_id = session_id
        self.state = state
        self.skipped = skipped
        self.skip_window = skip_window
        self.pending_skipped: Dict[int, MessageKeys] = {}
        self._from_cache: Optional[int] = None

    def next_sending_keys(self) -> Tuple[int, MessageKeys]:
        """
        Derive keys for the next outgoing message and advance the sending chain.

        Returns:
            Tuple of (message_number, MessageKeys)
        """
        counters = self.state.counters
        number = counters.send_count
        keys = derive_message_keys(self.state.sending_chain, number)
        self.state.sending_chain = advance_chain(self.state.sending_chain)
        counters.send_count = number + 1
        return number, keys

    def check_replay(self, message_number: int):
        """
        Reject delivered or too-old message numbers.

        Raises:
            ReplayError: If the number was already delivered
            StaleMessageError: If the number is behind the skip window
        """
        counters = self.state.counters
        if counters.delivered_high < 0 or message_number > counters.delivered_high:
            return
        distance = counters.delivered_high - message_number
        if distance >= self.skip_window:
            raise StaleMessageError(f"message {message_number} is {distance} behind")
        if counters.delivered_bitmap >> distance & 1:
            raise ReplayError(f"message {message_number} already delivered")

    def receiving_keys(self, message_number: int) -> MessageKeys:
        """
        Derive (or fetch from the skip cache) the keys for an incoming message.

        Raises:
            KeyDerivationError: If the number is outside the skip window or its key is gone
        """
        counters = self.state.counters
        if message_number < counters.recv_count:
            cached = self.skipped.get(self.session_id, message_number)
            if cached is None:
                raise KeyDerivationError(f"no key left for message {message_number}")
            self._from_cache = message_number
            return MessageKeys(bytearray(cached.encryption_key), bytearray(cached.authentication_key))

        gap = message_number - counters.recv_count
        if gap > self.skip_window:
            raise KeyDerivationError(f"message {message_number} is {gap} ahead of the chain")

        chain = self.state.receiving_chain
        for number in range(counters.recv_count, message_number):
            self.pending_skipped[number] = derive_message_keys(chain, number)
            chain = advance_chain(chain)
        keys = derive_message_keys(chain, message_number)
        self.state.receiving_chain = advance_chain(chain)
        counters.recv_count = message_number + 1
        return keys

    def mark_delivered(self, message_number: int):
        counters = self.state.counters
        mask = (1 << self.skip_window) - 1
        if message_number > counters.delivered_high:
            if counters.delivered_high < 0:
                counters.delivered_bitmap = 1
            else:
                shift = message_number - counters.delivered_high
                counters.delivered_bitmap = ((counters.delivered_bitmap << shift) | 1) & mask
            counters.delivered_high = message_number
        else:
            counters.delivered_bitmap |= 1 << (counters.delivered_high - message_number)

    def commit(self):
        """Publish staged skipped keys and drop the consumed cached key"""
        if self._from_cache is not None:
            self.skipped.discard(self.session_id, self._from_cache)
            self._from_cache = None
        self.skipped.store(self.session_id, self.pending_skipped)
        self.pending_skipped = {}

    def abandon(self):
        """Discard staged work after a failed receive"""
        for keys in self.pending_skipped.values():
            keys.wipe()
        self.pending_skipped = {}
        self._from_cache = None
        self.state.wipe()
