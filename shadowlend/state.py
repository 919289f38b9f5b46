import hashlib
import struct
from dataclasses import dataclass

from loguru import logger
from solders.pubkey import Pubkey

from .ciphers import decrypt
from .errors import MalformedAccount, NonceRegression


POOL_DISCRIMINATOR = bytes([241, 154, 109, 4, 17, 177, 109, 188])
OBLIGATION_DISCRIMINATOR = bytes([82, 43, 188, 33, 64, 224, 73, 242])

SLOT_LEN = 32
STATE_LEN = 96
SLOT_DEPOSIT, SLOT_DEBT, SLOT_BALANCE = 0, 1, 2
SLOT_NAMES = ("deposit", "debt", "internal_balance")

# user, pool, encrypted_state, is_initialized, state_nonce (lo, hi), bump
_OBLIGATION = struct.Struct("<32s32s96s?QQB")
# authority, collateral_mint, borrow_mint, ltv_bps, liquidation_threshold, total_deposits, bump
_POOL = struct.Struct("<32s32s32sHHQB")


@dataclass(frozen=True)
class UserObligation:
    user: Pubkey
    pool: Pubkey
    encrypted_state: bytes
    is_initialized: bool
    state_nonce: int
    bump: int

    @property
    def state_hash(self):
        return hashlib.sha256(self.encrypted_state).digest()

    def slot(self, index):
        if not 0 <= index < STATE_LEN // SLOT_LEN:
            raise IndexError(f"slot {index} out of range")
        return self.encrypted_state[index * SLOT_LEN:(index + 1) * SLOT_LEN]


@dataclass(frozen=True)
class Pool:
    authority: Pubkey
    collateral_mint: Pubkey
    borrow_mint: Pubkey
    ltv_bps: int
    liquidation_threshold: int
    total_deposits: int
    bump: int


def _body(data, disc, layout, kind):
    data = bytes(data)
    if data[:8] != disc:
        raise MalformedAccount(f"{kind}: bad discriminator {data[:8].hex()}")
    # accounts may be allocated with trailing space
    if len(data) < 8 + layout.size:
        raise MalformedAccount(f"{kind}: {len(data)} bytes, need {8 + layout.size}")
    return layout.unpack_from(data, 8)


def parse_obligation(data):
    user, pool, enc, init, lo, hi, bump = _body(data, OBLIGATION_DISCRIMINATOR, _OBLIGATION, "UserObligation")
    return UserObligation(Pubkey.from_bytes(user), Pubkey.from_bytes(pool), enc, init, lo | (hi << 64), bump)


def parse_pool(data):
    auth, cmint, bmint, ltv, lt, total, bump = _body(data, POOL_DISCRIMINATOR, _POOL, "Pool")
    return Pool(Pubkey.from_bytes(auth), Pubkey.from_bytes(cmint), Pubkey.from_bytes(bmint), ltv, lt, total, bump)


def has_advanced(before, after):
    return after > before


def decrypt_slot(encrypted_state, slot, shared_secret, nonce):
    if len(encrypted_state) != STATE_LEN:
        raise MalformedAccount(f"encrypted state must be {STATE_LEN} bytes, got {len(encrypted_state)}")
    if not 0 <= slot < STATE_LEN // SLOT_LEN:
        raise IndexError(f"slot {slot} out of range")
    block = encrypted_state[slot * SLOT_LEN:(slot + 1) * SLOT_LEN]
    return decrypt(shared_secret, block, nonce, slot)


class ObligationStateTracker:
    """Reads obligation records through a ledger adapter and watches their nonces."""

    def __init__(self, ledger):
        self.ledger = ledger
        self._seen = {}

    async def fetch_obligation(self, obligation):
        data = await self.ledger.get_account_data(obligation)
        if data is None:
            return None
        return parse_obligation(data)

    async def fetch_pool(self, pool):
        data = await self.ledger.get_account_data(pool)
        if data is None:
            return None
        return parse_pool(data)

    async def observe_nonce(self, obligation):
        record = await self.fetch_obligation(obligation)
        nonce = record.state_nonce if record else 0
        self._record(obligation, nonce)
        return nonce

    def _record(self, obligation, nonce):
        key = str(obligation)
        seen = self._seen.get(key)
        if seen is not None and nonce < seen:
            raise NonceRegression(key, seen, nonce)
        if seen != nonce:
            logger.debug(f"obligation {key[:8]}.. nonce {nonce}")
        self._seen[key] = nonce

    def last_seen(self, obligation):
        return self._seen.get(str(obligation))

    has_advanced = staticmethod(has_advanced)
    decrypt_slot = staticmethod(decrypt_slot)
