import asyncio

import pytest

from shadowlend.ciphers import decrypt
from shadowlend.codec import Operation, decode_instruction
from shadowlend.config import PollPolicy
from shadowlend.errors import ObligationBusy, StaleNonce, ProgramError, LedgerError, InvalidArgument, ConfigError
from shadowlend.gateway import ComputationGateway, OperationRequest, State, poll


@pytest.fixture
def gateway():
    return ComputationGateway()


@pytest.fixture
def obligation(ctx):
    return ctx.addresses.obligation(ctx.payer_pubkey)


@pytest.fixture
def at_nonce(ledger, ctx, obligation):
    def put(n):
        ledger.set_nonce(obligation, ctx.payer_pubkey, ctx.addresses.pool, n)
    return put


def run(coro):
    return asyncio.run(coro)


class TestPoll:
    def test_returns_first_hit(self):
        calls = []

        async def probe():
            calls.append(1)
            return len(calls) == 3 and "done"

        assert run(poll(probe, PollPolicy(0, 5))) == "done"
        assert len(calls) == 3

    def test_exhaustion_returns_none(self):
        calls = []

        async def probe():
            calls.append(1)
            return None

        assert run(poll(probe, PollPolicy(0, 4))) is None
        assert len(calls) == 4


class TestLifecycle:
    def test_finalized_when_nonce_advances(self, gateway, ctx, ledger, obligation, at_nonce):
        at_nonce(3)
        ledger.land_callback(obligation, after_reads=2)
        outcome = run(gateway.run(ctx, OperationRequest(Operation.BORROW, 1000)))
        assert outcome.state is State.FINALIZED
        assert (outcome.nonce_before, outcome.nonce_after) == (3, 4)
        assert outcome.history == [
            State.BUILDING, State.SUBMITTED, State.AWAITING_COMPUTATION_PICKUP,
            State.AWAITING_CALLBACK, State.FINALIZED,
        ]
        assert outcome.signature == "sig1"

    def test_timed_out_without_callback(self, gateway, ctx, ledger, at_nonce):
        at_nonce(3)
        outcome = run(gateway.run(ctx, OperationRequest(Operation.BORROW, 1000)))
        assert outcome.state is State.TIMED_OUT
        assert outcome.stage == "callback"
        assert outcome.nonce_after is None

    def test_timed_out_at_pickup(self, gateway, ctx, ledger, at_nonce):
        at_nonce(0)
        ledger.pickup = False
        outcome = run(gateway.run(ctx, OperationRequest(Operation.DEPOSIT, 5)))
        assert outcome.timed_out
        assert outcome.stage == "pickup"

    def test_unconfirmed_submission_times_out(self, gateway, ctx, ledger, at_nonce):
        at_nonce(0)
        ledger.statuses["sig1"] = {"confirmationStatus": "processed", "err": None}
        outcome = run(gateway.run(ctx, OperationRequest(Operation.DEPOSIT, 5)))
        assert outcome.timed_out
        assert outcome.stage == "submission"

    def test_first_deposit_on_missing_obligation(self, gateway, ctx, ledger, obligation):
        outcome = run(gateway.run(ctx, OperationRequest(Operation.DEPOSIT, 500000)))
        # nothing creates the account in the fake, so the callback never lands
        assert outcome.timed_out and outcome.nonce_before == 0
        op, args = decode_instruction(bytes(ledger.sent[0][0].data))
        assert op is Operation.DEPOSIT
        assert args.amount == 500000 and args.user_nonce == 0
        assert args.user_pubkey == ctx.user_public_key

    def test_confidential_amount_is_encrypted(self, gateway, ctx, ledger, obligation, at_nonce, secret):
        at_nonce(8)
        ledger.land_callback(obligation)
        run(gateway.run(ctx, OperationRequest(Operation.WITHDRAW, 777)))
        op, args = decode_instruction(bytes(ledger.sent[0][0].data))
        assert op is Operation.WITHDRAW
        assert args.user_nonce == 8
        assert (777).to_bytes(8, "little") not in args.encrypted_amount
        assert decrypt(secret, args.encrypted_amount, 8) == 777

    def test_repay_is_plaintext(self, gateway, ctx, ledger, obligation, at_nonce):
        at_nonce(1)
        ledger.land_callback(obligation)
        outcome = run(gateway.run(ctx, OperationRequest(Operation.REPAY, 250)))
        assert outcome.finalized
        op, args = decode_instruction(bytes(ledger.sent[0][0].data))
        assert (op, args.amount) == (Operation.REPAY, 250)

    def test_fresh_offset_each_run(self, gateway, ctx, ledger, obligation, at_nonce):
        at_nonce(1)
        ledger.land_callback(obligation)
        first = run(gateway.run(ctx, OperationRequest(Operation.REPAY, 1)))
        ledger.land_callback(obligation)
        second = run(gateway.run(ctx, OperationRequest(Operation.REPAY, 1)))
        assert first.finalized and second.finalized
        assert first.computation_offset != second.computation_offset
        assert (second.nonce_before, second.nonce_after) == (2, 3)


class TestRejections:
    def test_program_error_at_confirmation(self, gateway, ctx, ledger, at_nonce):
        at_nonce(2)
        ledger.statuses["sig1"] = {"confirmationStatus": "confirmed", "err": {"InstructionError": [0, {"Custom": 6002}]}}
        outcome = run(gateway.run(ctx, OperationRequest(Operation.BORROW, 10)))
        assert outcome.rejected
        assert outcome.stage == "submission"
        assert isinstance(outcome.error, ProgramError)
        assert outcome.error.name == "InsufficientLiquidity"

    def test_preflight_rejection(self, gateway, ctx, ledger, at_nonce):
        at_nonce(2)
        ledger.send_error = ProgramError(6008, {"InstructionError": [0, {"Custom": 6008}]})
        outcome = run(gateway.run(ctx, OperationRequest(Operation.SPEND, 10)))
        assert outcome.rejected
        assert outcome.error.code == 6008

    def test_transport_failure_raises(self, gateway, ctx, ledger, at_nonce):
        at_nonce(2)
        ledger.send_error = LedgerError("sendTransaction: timeout")
        with pytest.raises(LedgerError):
            run(gateway.run(ctx, OperationRequest(Operation.SPEND, 10)))

    def test_failed_callback_is_rejected(self, gateway, ctx, ledger, at_nonce):
        at_nonce(2)
        real_send = ledger.send_instructions

        async def send(instructions, signers):
            sig = await real_send(instructions, signers)
            computation = instructions[0].accounts[5].pubkey
            ledger.failures[str(computation)] = [{"signature": "cb", "err": {"InstructionError": [0, {"Custom": 6003}]}}]
            return sig

        ledger.send_instructions = send
        outcome = run(gateway.run(ctx, OperationRequest(Operation.BORROW, 10)))
        assert outcome.rejected
        assert outcome.stage == "callback"
        assert outcome.error.name == "BorrowNotApproved"

    def test_new_request_after_callback_rejection(self, gateway, ctx, ledger, obligation, at_nonce):
        at_nonce(2)
        real_send = ledger.send_instructions

        async def send(instructions, signers):
            sig = await real_send(instructions, signers)
            if len(ledger.sent) == 1:
                computation = instructions[0].accounts[5].pubkey
                ledger.failures[str(computation)] = [{"signature": "cb", "err": {"InstructionError": [0, {"Custom": 6003}]}}]
            return sig

        ledger.send_instructions = send
        first = run(gateway.run(ctx, OperationRequest(Operation.BORROW, 10)))
        assert first.rejected and first.stage == "callback"
        ledger.land_callback(obligation)
        second = run(gateway.run(ctx, OperationRequest(Operation.BORROW, 5)))
        assert second.finalized
        assert (second.nonce_before, second.nonce_after) == (2, 3)


class TestConcurrencyDiscipline:
    def test_second_request_rejected_while_first_in_flight(self, ctx, ledger, obligation, at_nonce):
        at_nonce(3)
        gateway = ComputationGateway(callback_poll=PollPolicy(0.01, 20))

        async def scenario():
            first = asyncio.create_task(gateway.run(ctx, OperationRequest(Operation.BORROW, 1)))
            await asyncio.sleep(0)
            assert ctx.busy(obligation)
            with pytest.raises(ObligationBusy):
                await gateway.run(ctx, OperationRequest(Operation.BORROW, 2))
            return await first

        outcome = run(scenario())
        assert len(ledger.sent) == 1
        assert outcome.timed_out

    def test_queued_request_with_stale_nonce_is_refused(self, ctx, ledger, obligation, at_nonce):
        at_nonce(3)
        ledger.land_callback(obligation, after_reads=3)
        gateway = ComputationGateway(callback_poll=PollPolicy(0.01, 20))

        async def scenario():
            captured = await ctx.tracker.observe_nonce(obligation)
            first = asyncio.create_task(gateway.run(ctx, OperationRequest(Operation.BORROW, 1, expected_nonce=captured)))
            await asyncio.sleep(0)
            second = gateway.run(ctx, OperationRequest(Operation.BORROW, 2, expected_nonce=captured), wait=True)
            with pytest.raises(StaleNonce):
                await second
            return await first

        outcome = run(scenario())
        assert outcome.finalized
        assert len(ledger.sent) == 1

    def test_used_nonce_is_not_reused_after_timeout(self, gateway, ctx, ledger, at_nonce):
        at_nonce(3)
        outcome = run(gateway.run(ctx, OperationRequest(Operation.BORROW, 1)))
        assert outcome.timed_out
        with pytest.raises(StaleNonce):
            run(gateway.run(ctx, OperationRequest(Operation.BORROW, 1)))
        assert len(ledger.sent) == 1

    def test_retry_after_timeout_uses_fresh_offset(self, gateway, ctx, ledger, obligation, at_nonce):
        at_nonce(3)
        request = OperationRequest(Operation.BORROW, 1)
        first = run(gateway.run(ctx, request))
        ledger.land_callback(obligation)
        second = run(gateway.retry(ctx, request, first))
        assert second.finalized
        assert second.computation_offset != first.computation_offset

    def test_retry_refused_once_state_moved(self, gateway, ctx, ledger, at_nonce):
        at_nonce(3)
        request = OperationRequest(Operation.BORROW, 1)
        first = run(gateway.run(ctx, request))
        at_nonce(4)
        with pytest.raises(StaleNonce):
            run(gateway.retry(ctx, request, first))

    def test_rejected_submission_frees_nonce(self, gateway, ctx, ledger, obligation, at_nonce):
        at_nonce(2)
        ledger.statuses["sig1"] = {"confirmationStatus": "confirmed", "err": {"InstructionError": [0, {"Custom": 6000}]}}
        assert run(gateway.run(ctx, OperationRequest(Operation.REPAY, 0))).rejected
        ledger.land_callback(obligation)
        assert run(gateway.run(ctx, OperationRequest(Operation.REPAY, 5))).finalized

    def test_busy_while_waiter_is_queued(self, ctx, obligation):
        async def scenario():
            release, done = asyncio.Event(), asyncio.Event()

            async def holder():
                async with ctx.claim(obligation):
                    await release.wait()

            async def waiter():
                async with ctx.claim(obligation, wait=True):
                    await done.wait()

            first = asyncio.create_task(holder())
            await asyncio.sleep(0)
            second = asyncio.create_task(waiter())
            await asyncio.sleep(0)
            release.set()
            await first
            assert ctx.busy(obligation)
            with pytest.raises(ObligationBusy):
                async with ctx.claim(obligation):
                    pass
            done.set()
            await second
            assert not ctx.busy(obligation)

        run(scenario())


class TestBuilding:
    def test_liquidate_needs_victim(self, gateway, ctx):
        with pytest.raises(InvalidArgument):
            run(gateway.run(ctx, OperationRequest(Operation.LIQUIDATE, 1)))

    def test_cannot_act_on_foreign_obligation(self, gateway, ctx, mxe_keys):
        from solders.pubkey import Pubkey
        with pytest.raises(InvalidArgument):
            run(gateway.run(ctx, OperationRequest(Operation.BORROW, 1, owner=Pubkey.from_bytes(bytes([5] * 32)))))

    def test_missing_cluster_offset(self, gateway, ctx, ledger):
        ctx.settings.cluster_offset = None
        with pytest.raises(ConfigError):
            run(gateway.run(ctx, OperationRequest(Operation.REPAY, 1)))
        assert not ledger.sent

    def test_amount_range(self, gateway, ctx):
        with pytest.raises(InvalidArgument):
            run(gateway.run(ctx, OperationRequest(Operation.REPAY, 2 ** 64)))

    def test_lock_released_after_error(self, gateway, ctx, obligation):
        with pytest.raises(InvalidArgument):
            run(gateway.run(ctx, OperationRequest(Operation.REPAY, -1)))
        assert not ctx.busy(obligation)

    def test_liquidate_targets_victim_obligation(self, gateway, ctx, ledger, user_keys):
        from solders.pubkey import Pubkey
        victim = Pubkey.from_bytes(bytes([6] * 32))
        victim_obligation = ctx.addresses.obligation(victim)
        ledger.set_nonce(victim_obligation, victim, ctx.addresses.pool, 11)
        ledger.land_callback(victim_obligation)
        outcome = run(gateway.run(ctx, OperationRequest(Operation.LIQUIDATE, 300, owner=victim,
                                                        victim_public_key=bytes([8] * 32))))
        assert outcome.finalized
        assert outcome.obligation == victim_obligation
        op, args = decode_instruction(bytes(ledger.sent[0][0].data))
        assert (args.repay_amount, args.victim_nonce, args.victim_pubkey) == (300, 11, bytes([8] * 32))
