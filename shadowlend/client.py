from loguru import logger

from .codec import Operation
from .errors import CryptoError
from .gateway import ComputationGateway, OperationRequest
from .state import SLOT_NAMES, decrypt_slot


class ShadowLendClient:
    """One method per lending operation, all routed through a ComputationGateway."""

    def __init__(self, ctx, gateway=None):
        self.ctx = ctx
        self.gateway = gateway or ComputationGateway()

    def obligation_address(self, user=None):
        return self.ctx.addresses.obligation(user or self.ctx.payer_pubkey)

    async def _submit(self, op, amount, wait=False, expected_nonce=None, **kw):
        request = OperationRequest(op, int(amount), expected_nonce=expected_nonce, **kw)
        return await self.gateway.run(self.ctx, request, wait=wait)

    async def deposit(self, amount, **kw):
        return await self._submit(Operation.DEPOSIT, amount, **kw)

    async def borrow(self, amount, **kw):
        return await self._submit(Operation.BORROW, amount, **kw)

    async def withdraw(self, amount, **kw):
        return await self._submit(Operation.WITHDRAW, amount, **kw)

    async def repay(self, amount, **kw):
        return await self._submit(Operation.REPAY, amount, **kw)

    async def spend(self, amount, destination=None, **kw):
        return await self._submit(Operation.SPEND, amount, destination=destination, **kw)

    async def liquidate(self, victim, victim_public_key, repay_amount, **kw):
        return await self._submit(Operation.LIQUIDATE, repay_amount, owner=victim,
                                  victim_public_key=victim_public_key, **kw)

    async def pool(self):
        return await self.ctx.tracker.fetch_pool(self.ctx.addresses.pool)

    async def position(self, user=None, nonce=None):
        """Obligation record plus whatever slots this session can decrypt.

        Slots that fail to decrypt come back as None. `nonce` defaults to the
        record's state nonce.
        """
        record = await self.ctx.tracker.fetch_obligation(self.obligation_address(user))
        if record is None:
            return None, {}
        balances = {}
        if self.ctx.keys is not None and self.ctx.settings.mxe_public_key is not None:
            secret = self.ctx.shared_secret()
            n = record.state_nonce if nonce is None else nonce
            for i, name in enumerate(SLOT_NAMES):
                try:
                    balances[name] = decrypt_slot(record.encrypted_state, i, secret, n)
                except CryptoError as e:
                    logger.debug(f"slot {name} not decryptable with this key: {e}")
                    balances[name] = None
        return record, balances
