"""Submit a confidential operation and follow it until its callback lands.

One run moves through BUILDING, SUBMITTED, AWAITING_COMPUTATION_PICKUP and
AWAITING_CALLBACK, then ends in FINALIZED, TIMED_OUT or REJECTED. The state
nonce on the obligation is the only completion signal: elapsed time never
counts as success.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from loguru import logger
from solders.pubkey import Pubkey

from .accounts import ArciumAccounts, accounts_for, build_instruction
from .ciphers import KeyMaterial, derive_shared_secret, encrypt
from .codec import Operation, DepositArgs, ConfidentialArgs, RepayArgs, LiquidateArgs, U64_MAX
from .errors import LedgerError, ObligationBusy, StaleNonce, InvalidArgument, program_error_from
from .state import ObligationStateTracker, has_advanced


class State(Enum):
    BUILDING = "building"
    SUBMITTED = "submitted"
    AWAITING_COMPUTATION_PICKUP = "awaiting_computation_pickup"
    AWAITING_CALLBACK = "awaiting_callback"
    FINALIZED = "finalized"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"

    @property
    def terminal(self):
        return self in (State.FINALIZED, State.TIMED_OUT, State.REJECTED)


@dataclass(frozen=True)
class OperationRequest:
    operation: Operation
    amount: int
    # obligation owner; the payer unless liquidating someone else
    owner: Optional[Pubkey] = None
    victim_public_key: Optional[bytes] = None
    destination: Optional[Pubkey] = None
    expected_nonce: Optional[int] = None


@dataclass
class ComputationOutcome:
    operation: Operation
    obligation: Pubkey
    state: State = State.BUILDING
    computation_offset: Optional[int] = None
    signature: Optional[str] = None
    nonce_before: Optional[int] = None
    nonce_after: Optional[int] = None
    stage: Optional[str] = None
    error: Optional[Exception] = None
    history: list = field(default_factory=lambda: [State.BUILDING])

    @property
    def finalized(self):
        return self.state is State.FINALIZED

    @property
    def timed_out(self):
        return self.state is State.TIMED_OUT

    @property
    def rejected(self):
        return self.state is State.REJECTED


class ClientContext:
    """Everything one session needs: ledger adapter, payer, settings and keys.

    Built once by the caller and passed to every gateway call. It also holds the
    per-obligation in-flight guard and the offsets and nonces already spent.
    """

    def __init__(self, ledger, payer, settings, keys: Optional[KeyMaterial] = None):
        self.ledger = ledger
        self.payer = payer
        self.settings = settings
        self.keys = keys
        self.addresses = settings.addresses()
        self.tracker = ObligationStateTracker(ledger)
        self._secrets = {}
        self._locks = {}
        self._offsets = set()
        self._used_nonces = {}
        self._inflight = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self):
        close = getattr(self.ledger, "close", None)
        if close:
            await close()

    @property
    def payer_pubkey(self):
        return self.payer.pubkey()

    @property
    def user_public_key(self):
        if self.keys is None:
            raise InvalidArgument("no x25519 key material loaded")
        return self.keys.public_key

    def shared_secret(self, cluster_public_key=None):
        if self.keys is None:
            raise InvalidArgument("no x25519 key material loaded")
        cluster_public_key = cluster_public_key or self.settings.require_mxe_public_key()
        secret = self._secrets.get(cluster_public_key)
        if secret is None:
            secret = derive_shared_secret(self.keys.private_key, cluster_public_key)
            self._secrets[cluster_public_key] = secret
        return secret

    def new_computation_offset(self):
        while True:
            offset = int.from_bytes(os.urandom(8), "little")
            if offset not in self._offsets:
                self._offsets.add(offset)
                return offset

    def busy(self, obligation):
        return self._inflight.get(str(obligation), 0) > 0

    @asynccontextmanager
    async def claim(self, obligation, wait=False):
        key = str(obligation)
        if self._inflight.get(key, 0) and not wait:
            raise ObligationBusy(f"an operation on obligation {key} is still in flight")
        # holders and queued waiters both count as in flight
        self._inflight[key] = self._inflight.get(key, 0) + 1
        lock = self._locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                yield
        finally:
            self._inflight[key] -= 1

    def nonce_used(self, obligation, nonce):
        return nonce in self._used_nonces.get(str(obligation), ())

    def mark_nonce_used(self, obligation, nonce):
        self._used_nonces.setdefault(str(obligation), set()).add(nonce)

    def release_nonce(self, obligation, nonce):
        self._used_nonces.get(str(obligation), set()).discard(nonce)


async def poll(probe, policy, label="poll"):
    """Call `probe` up to policy.attempts times, sleeping policy.interval between tries.

    Returns the first truthy result, or None once the attempts run out.
    """
    for attempt in range(policy.attempts):
        result = await probe()
        if result:
            return result
        logger.debug(f"{label}: attempt {attempt + 1}/{policy.attempts}")
        if attempt + 1 < policy.attempts:
            await asyncio.sleep(policy.interval)
    return None


def _reported(e):
    # transport failures carry no ledger response
    return isinstance(e, LedgerError) and e.raw is not None


class ComputationGateway:

    def __init__(self, confirm_poll=None, pickup_poll=None, callback_poll=None):
        self.confirm_poll = confirm_poll
        self.pickup_poll = pickup_poll
        self.callback_poll = callback_poll

    def _policy(self, ctx, name):
        return getattr(self, name) or getattr(ctx.settings, name)

    def _move(self, outcome, state, **kw):
        for k, v in kw.items():
            setattr(outcome, k, v)
        outcome.state = state
        outcome.history.append(state)
        offset = f"{outcome.computation_offset:#018x}" if outcome.computation_offset is not None else "-"
        if state in (State.TIMED_OUT, State.REJECTED):
            logger.warning(f"{outcome.operation.value} {offset}: {state.value} ({outcome.stage}) {outcome.error or ''}")
        else:
            logger.info(f"{outcome.operation.value} {offset}: {state.value}")
        return outcome

    def obligation_for(self, ctx, request):
        if request.operation is Operation.LIQUIDATE:
            if request.owner is None:
                raise InvalidArgument("liquidate needs the victim's address as owner")
            return ctx.addresses.obligation(request.owner)
        if request.owner is not None and request.owner != ctx.payer_pubkey:
            raise InvalidArgument(f"{request.operation.value} can only act on the payer's own obligation")
        return ctx.addresses.obligation(ctx.payer_pubkey)

    def build(self, ctx, request, obligation, offset, nonce):
        op = request.operation
        if not isinstance(request.amount, int) or not 0 <= request.amount <= U64_MAX:
            raise InvalidArgument(f"amount out of u64 range: {request.amount!r}")
        cluster_offset = ctx.settings.require_cluster_offset()
        arcium = ArciumAccounts.derive(ctx.settings.program_id, cluster_offset, offset, op.value)
        accounts = accounts_for(op, ctx.addresses, ctx.payer_pubkey, arcium,
                                victim_obligation=obligation if op is Operation.LIQUIDATE else None,
                                destination=request.destination)
        if op is Operation.DEPOSIT:
            args = DepositArgs(offset, request.amount, ctx.user_public_key, nonce)
        elif op is Operation.REPAY:
            args = RepayArgs(offset, request.amount)
        elif op is Operation.LIQUIDATE:
            if request.victim_public_key is None:
                raise InvalidArgument("liquidate needs the victim's x25519 public key")
            args = LiquidateArgs(offset, request.amount, request.victim_public_key, nonce)
        elif op.confidential:
            ct = encrypt(ctx.shared_secret(), [request.amount], nonce)[0]
            args = ConfidentialArgs(offset, ct.ciphertext, ctx.user_public_key, nonce)
        else:
            raise InvalidArgument(f"{op.value} cannot be submitted")
        return build_instruction(ctx.settings.program_id, op, accounts, args), arcium

    async def run(self, ctx, request, wait=False, resubmit=False):
        """Drive one request to a terminal state.

        Timeouts come back as TIMED_OUT outcomes. Busy obligations and stale
        nonces raise before anything is sent.
        """
        obligation = self.obligation_for(ctx, request)
        outcome = ComputationOutcome(request.operation, obligation)
        async with ctx.claim(obligation, wait):
            nonce = await ctx.tracker.observe_nonce(obligation)
            if request.expected_nonce is not None and request.expected_nonce != nonce:
                raise StaleNonce(f"expected nonce {request.expected_nonce}, obligation is at {nonce}")
            if ctx.nonce_used(obligation, nonce) and not resubmit:
                raise StaleNonce(f"nonce {nonce} on {obligation} was already used for a submission")
            offset = ctx.new_computation_offset()
            outcome.computation_offset, outcome.nonce_before = offset, nonce
            ix, arcium = self.build(ctx, request, obligation, offset, nonce)

            try:
                outcome.signature = await ctx.ledger.send_instructions([ix], [ctx.payer])
            except LedgerError as e:
                if not _reported(e):
                    raise
                return self._move(outcome, State.REJECTED, stage="submission", error=e)
            ctx.mark_nonce_used(obligation, nonce)

            try:
                confirmed = await poll(lambda: self._confirmed(ctx, outcome.signature),
                                       self._policy(ctx, "confirm_poll"), "confirm")
            except LedgerError as e:
                if not _reported(e):
                    raise
                ctx.release_nonce(obligation, nonce)
                return self._move(outcome, State.REJECTED, stage="submission", error=e)
            if not confirmed:
                return self._move(outcome, State.TIMED_OUT, stage="submission")
            self._move(outcome, State.SUBMITTED)

            self._move(outcome, State.AWAITING_COMPUTATION_PICKUP)
            picked = await poll(lambda: ctx.ledger.account_exists(arcium.computation),
                                self._policy(ctx, "pickup_poll"), "pickup")
            if not picked:
                return self._move(outcome, State.TIMED_OUT, stage="pickup")

            self._move(outcome, State.AWAITING_CALLBACK)
            try:
                after = await poll(lambda: self._landed(ctx, obligation, nonce, arcium.computation),
                                   self._policy(ctx, "callback_poll"), "callback")
            except LedgerError as e:
                if not _reported(e):
                    raise
                # a failed callback leaves the on-chain nonce where it was
                ctx.release_nonce(obligation, nonce)
                return self._move(outcome, State.REJECTED, stage="callback", error=e)
            if after is None:
                return self._move(outcome, State.TIMED_OUT, stage="callback")
            if after != nonce + 1:
                logger.warning(f"nonce jumped {nonce} -> {after}; another update landed on {obligation}")
            return self._move(outcome, State.FINALIZED, nonce_after=after)

    async def retry(self, ctx, request, outcome):
        """Re-run a timed-out request with a fresh offset if its callback never landed."""
        if not outcome.timed_out:
            raise InvalidArgument(f"only timed-out operations can be retried, this one is {outcome.state.value}")
        nonce = await ctx.tracker.observe_nonce(outcome.obligation)
        if nonce != outcome.nonce_before:
            raise StaleNonce(f"obligation moved to nonce {nonce}; the earlier request may have landed")
        return await self.run(ctx, request, resubmit=True)

    async def _confirmed(self, ctx, signature):
        st = await ctx.ledger.signature_status(signature)
        if not st:
            return None
        if st.get("err") is not None:
            raise program_error_from(st["err"])
        if st.get("confirmationStatus") in ("confirmed", "finalized"):
            return st
        return None

    async def _landed(self, ctx, obligation, before, computation):
        after = await ctx.tracker.observe_nonce(obligation)
        if has_advanced(before, after):
            return after
        failures = await ctx.ledger.recent_failures(computation)
        if failures:
            raise program_error_from(failures[0]["err"])
        return None
