"""Ordered account lists for each request instruction.

Each operation has its own dataclass so that a missing account fails at
construction time instead of as a ledger rejection.
"""

from dataclasses import dataclass

from solders.instruction import Instruction, AccountMeta
from solders.pubkey import Pubkey

from . import pda
from .codec import (
    Operation, encode_instruction, DepositArgs, ConfidentialArgs, RepayArgs, LiquidateArgs,
)


def _ro(key):
    return AccountMeta(key, is_signer=False, is_writable=False)


def _rw(key):
    return AccountMeta(key, is_signer=False, is_writable=True)


@dataclass(frozen=True)
class ArciumAccounts:
    """Queue-computation accounts shared by every request, in instruction order after the payer."""

    sign_pda: Pubkey
    mxe: Pubkey
    mempool: Pubkey
    executing_pool: Pubkey
    computation: Pubkey
    comp_def: Pubkey
    cluster: Pubkey
    fee_pool: Pubkey
    clock: Pubkey

    @classmethod
    def derive(cls, program_id, cluster_offset, computation_offset, comp_def_name):
        return cls(
            sign_pda=pda.sign_pda_address(program_id)[0],
            mxe=pda.mxe_address(program_id)[0],
            mempool=pda.mempool_address(cluster_offset)[0],
            executing_pool=pda.execpool_address(cluster_offset)[0],
            computation=pda.computation_address(cluster_offset, computation_offset)[0],
            comp_def=pda.comp_def_address(comp_def_name, program_id)[0],
            cluster=pda.cluster_address(cluster_offset)[0],
            fee_pool=pda.fee_pool_address()[0],
            clock=pda.clock_address()[0],
        )

    def metas(self):
        return [
            _rw(self.sign_pda),
            _ro(self.mxe),
            _rw(self.mempool),
            _rw(self.executing_pool),
            _rw(self.computation),
            _ro(self.comp_def),
            _rw(self.cluster),
            _rw(self.fee_pool),
            _rw(self.clock),
        ]


@dataclass(frozen=True)
class DepositAccounts:
    payer: Pubkey
    arcium: ArciumAccounts
    pool: Pubkey
    user_obligation: Pubkey
    collateral_mint: Pubkey
    user_token_account: Pubkey
    collateral_vault: Pubkey

    def metas(self):
        return [AccountMeta(self.payer, is_signer=True, is_writable=True)] + self.arcium.metas() + [
            _rw(self.pool),
            _rw(self.user_obligation),
            _ro(self.collateral_mint),
            _rw(self.user_token_account),
            _rw(self.collateral_vault),
            _ro(pda.TOKEN_PROGRAM_ID),
            _ro(pda.ASSOCIATED_TOKEN_PROGRAM_ID),
            _ro(pda.SYSTEM_PROGRAM_ID),
            _ro(pda.ARCIUM_PROGRAM_ID),
        ]


@dataclass(frozen=True)
class BorrowAccounts:
    payer: Pubkey
    arcium: ArciumAccounts
    pool: Pubkey
    user_obligation: Pubkey

    def metas(self):
        return [AccountMeta(self.payer, is_signer=True, is_writable=True)] + self.arcium.metas() + [
            _ro(self.pool),
            _rw(self.user_obligation),
            _ro(pda.SYSTEM_PROGRAM_ID),
            _ro(pda.ARCIUM_PROGRAM_ID),
        ]


@dataclass(frozen=True)
class WithdrawAccounts:
    payer: Pubkey
    arcium: ArciumAccounts
    pool: Pubkey
    user_obligation: Pubkey
    collateral_mint: Pubkey
    user_token_account: Pubkey
    collateral_vault: Pubkey

    def metas(self):
        return [AccountMeta(self.payer, is_signer=True, is_writable=True)] + self.arcium.metas() + [
            _ro(self.pool),
            _rw(self.user_obligation),
            _ro(self.collateral_mint),
            _rw(self.user_token_account),
            _rw(self.collateral_vault),
            _ro(pda.TOKEN_PROGRAM_ID),
            _ro(pda.ASSOCIATED_TOKEN_PROGRAM_ID),
            _ro(pda.SYSTEM_PROGRAM_ID),
            _ro(pda.ARCIUM_PROGRAM_ID),
        ]


@dataclass(frozen=True)
class RepayAccounts:
    payer: Pubkey
    arcium: ArciumAccounts
    pool: Pubkey
    user_obligation: Pubkey
    borrow_mint: Pubkey
    user_token_account: Pubkey
    borrow_vault: Pubkey

    def metas(self):
        return [AccountMeta(self.payer, is_signer=True, is_writable=True)] + self.arcium.metas() + [
            _rw(self.pool),
            _rw(self.user_obligation),
            _ro(self.borrow_mint),
            _rw(self.user_token_account),
            _rw(self.borrow_vault),
            _ro(pda.TOKEN_PROGRAM_ID),
            _ro(pda.ASSOCIATED_TOKEN_PROGRAM_ID),
            _ro(pda.SYSTEM_PROGRAM_ID),
            _ro(pda.ARCIUM_PROGRAM_ID),
        ]


@dataclass(frozen=True)
class SpendAccounts:
    payer: Pubkey
    arcium: ArciumAccounts
    pool: Pubkey
    user_obligation: Pubkey
    destination_token_account: Pubkey
    borrow_vault: Pubkey

    def metas(self):
        return [AccountMeta(self.payer, is_signer=True, is_writable=True)] + self.arcium.metas() + [
            _rw(self.pool),
            _rw(self.user_obligation),
            _rw(self.destination_token_account),
            _rw(self.borrow_vault),
            _ro(pda.TOKEN_PROGRAM_ID),
            _ro(pda.SYSTEM_PROGRAM_ID),
            _ro(pda.ARCIUM_PROGRAM_ID),
        ]


@dataclass(frozen=True)
class LiquidateAccounts:
    liquidator: Pubkey
    arcium: ArciumAccounts
    pool: Pubkey
    user_obligation: Pubkey
    borrow_mint: Pubkey
    collateral_mint: Pubkey
    liquidator_borrow_account: Pubkey
    liquidator_collateral_account: Pubkey
    borrow_vault: Pubkey
    collateral_vault: Pubkey

    def metas(self):
        return [AccountMeta(self.liquidator, is_signer=True, is_writable=True)] + self.arcium.metas() + [
            _ro(self.pool),
            _rw(self.user_obligation),
            _ro(self.borrow_mint),
            _ro(self.collateral_mint),
            _rw(self.liquidator_borrow_account),
            _rw(self.liquidator_collateral_account),
            _rw(self.borrow_vault),
            _rw(self.collateral_vault),
            _ro(pda.TOKEN_PROGRAM_ID),
            _ro(pda.ASSOCIATED_TOKEN_PROGRAM_ID),
            _ro(pda.SYSTEM_PROGRAM_ID),
            _ro(pda.ARCIUM_PROGRAM_ID),
        ]


ACCOUNT_TYPES = {
    Operation.DEPOSIT: (DepositAccounts, DepositArgs),
    Operation.BORROW: (BorrowAccounts, ConfidentialArgs),
    Operation.WITHDRAW: (WithdrawAccounts, ConfidentialArgs),
    Operation.REPAY: (RepayAccounts, RepayArgs),
    Operation.SPEND: (SpendAccounts, ConfidentialArgs),
    Operation.LIQUIDATE: (LiquidateAccounts, LiquidateArgs),
}


def build_instruction(program_id, op, accounts, args):
    accounts_cls, args_cls = ACCOUNT_TYPES[op]
    if not isinstance(accounts, accounts_cls):
        raise TypeError(f"{op.value} needs {accounts_cls.__name__}, got {type(accounts).__name__}")
    if not isinstance(args, args_cls):
        raise TypeError(f"{op.value} needs {args_cls.__name__}, got {type(args).__name__}")
    return Instruction(program_id, encode_instruction(op, args), accounts.metas())


def accounts_for(op, addrs, user, arcium, victim_obligation=None, destination=None):
    """Fill the typed account list for `op` from deployment addresses.

    `user` is the payer (liquidator for liquidate). Liquidations act on
    `victim_obligation`; spends may name a `destination` token account.
    """
    obligation = addrs.obligation(user)
    if op is Operation.DEPOSIT:
        return DepositAccounts(user, arcium, addrs.pool, obligation, addrs.collateral_mint,
                               pda.associated_token_address(user, addrs.collateral_mint), addrs.collateral_vault)
    if op is Operation.BORROW:
        return BorrowAccounts(user, arcium, addrs.pool, obligation)
    if op is Operation.WITHDRAW:
        return WithdrawAccounts(user, arcium, addrs.pool, obligation, addrs.collateral_mint,
                                pda.associated_token_address(user, addrs.collateral_mint), addrs.collateral_vault)
    if op is Operation.REPAY:
        return RepayAccounts(user, arcium, addrs.pool, obligation, addrs.borrow_mint,
                             pda.associated_token_address(user, addrs.borrow_mint), addrs.borrow_vault)
    if op is Operation.SPEND:
        if destination is None:
            destination = pda.associated_token_address(user, addrs.borrow_mint)
        return SpendAccounts(user, arcium, addrs.pool, obligation, destination, addrs.borrow_vault)
    if op is Operation.LIQUIDATE:
        if victim_obligation is None:
            raise ValueError("liquidate needs the victim's obligation address")
        return LiquidateAccounts(user, arcium, addrs.pool, victim_obligation, addrs.borrow_mint,
                                 addrs.collateral_mint,
                                 pda.associated_token_address(user, addrs.borrow_mint),
                                 pda.associated_token_address(user, addrs.collateral_mint),
                                 addrs.borrow_vault, addrs.collateral_vault)
    raise ValueError(f"{op.value} is not a request operation")
