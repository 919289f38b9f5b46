import pytest
from solders.keypair import Keypair

from shadowlend.ciphers import KeyMaterial, encrypt, derive_shared_secret
from shadowlend.config import Settings, PollPolicy
from shadowlend.gateway import ClientContext
from shadowlend.state import OBLIGATION_DISCRIMINATOR, POOL_DISCRIMINATOR, _OBLIGATION, _POOL


FAST = PollPolicy(0, 5)


def obligation_bytes(user, pool, nonce, state=bytes(96), initialized=True, bump=254):
    lo, hi = nonce & ((1 << 64) - 1), nonce >> 64
    return OBLIGATION_DISCRIMINATOR + _OBLIGATION.pack(bytes(user), bytes(pool), state, initialized, lo, hi, bump)


def pool_bytes(authority, collateral_mint, borrow_mint, ltv=7500, threshold=8000, total=0, bump=253):
    return POOL_DISCRIMINATOR + _POOL.pack(bytes(authority), bytes(collateral_mint), bytes(borrow_mint),
                                           ltv, threshold, total, bump)


class FakeLedger:
    """In-memory stand-in for RpcClient.

    After each send the computation account appears and, if armed with
    land_callback, the obligation nonce moves up once enough reads have passed.
    """

    def __init__(self):
        self.accounts = {}
        self.sent = []
        self.statuses = {}
        self.failures = {}
        self.send_error = None
        self.pickup = True
        self.callback_reads = None
        self.callback_obligation = None
        self.armed_at = 0
        self.reads = 0
        self.closed = False

    def put(self, address, data):
        self.accounts[str(address)] = data

    def set_nonce(self, address, user, pool, nonce, state=bytes(96)):
        self.put(address, obligation_bytes(user, pool, nonce, state))

    def land_callback(self, obligation, after_reads=1):
        self.callback_obligation = str(obligation)
        self.callback_reads = after_reads
        self.armed_at = len(self.sent)

    def _advance(self):
        data = bytearray(self.accounts[self.callback_obligation])
        lo_at = 8 + 32 + 32 + 96 + 1
        nonce = int.from_bytes(data[lo_at:lo_at + 16], "little") + 1
        data[lo_at:lo_at + 16] = nonce.to_bytes(16, "little")
        self.accounts[self.callback_obligation] = bytes(data)
        self.callback_reads = None

    async def get_account_data(self, address):
        key = str(address)
        if len(self.sent) > self.armed_at and key == self.callback_obligation and self.callback_reads is not None:
            self.callback_reads -= 1
            if self.callback_reads <= 0:
                self._advance()
        self.reads += 1
        return self.accounts.get(key)

    async def account_exists(self, address):
        return str(address) in self.accounts

    async def send_instructions(self, instructions, signers):
        if self.send_error:
            raise self.send_error
        self.sent.append(instructions)
        if self.pickup:
            # computation account sits right after payer, signer, mxe, mempool, execpool
            self.put(instructions[0].accounts[5].pubkey, b"\x00" * 8)
        return f"sig{len(self.sent)}"

    async def signature_status(self, signature):
        return self.statuses.get(signature, {"confirmationStatus": "confirmed", "err": None})

    async def recent_failures(self, address, limit=10):
        return self.failures.get(str(address), [])

    async def close(self):
        self.closed = True


@pytest.fixture
def payer():
    return Keypair.from_seed(bytes(range(32)))


@pytest.fixture
def user_keys():
    return KeyMaterial.from_seed(bytes([7] * 32))


@pytest.fixture
def mxe_keys():
    return KeyMaterial.from_seed(bytes([9] * 32))


@pytest.fixture
def settings(mxe_keys):
    return Settings(
        network="localnet",
        rpc_url="http://127.0.0.1:8899",
        cluster_offset=456,
        mxe_public_key=mxe_keys.public_key,
        confirm_poll=FAST,
        pickup_poll=FAST,
        callback_poll=FAST,
    )


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def ctx(ledger, payer, settings, user_keys):
    return ClientContext(ledger, payer, settings, user_keys)


@pytest.fixture
def secret(user_keys, mxe_keys):
    return derive_shared_secret(user_keys.private_key, mxe_keys.public_key)


@pytest.fixture
def encrypted_state(secret):
    def make(deposit, debt, balance, nonce):
        blocks = encrypt(secret, [deposit, debt, balance], nonce)
        return b"".join(b.ciphertext for b in blocks)
    return make
