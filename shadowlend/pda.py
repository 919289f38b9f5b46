"""Deterministic account addresses for the lending program and the Arcium network.

Everything here is pure: the same seeds and program id always give the same
(address, bump) pair.
"""

import hashlib
import struct
from dataclasses import dataclass

from solders.pubkey import Pubkey

from .errors import AddressDerivationFailed


ARCIUM_PROGRAM_ID = Pubkey.from_string("Arcj82pX7HxYKLR92qvgZUAd7vGS1k4hQvAFcPATFdEQ")
# devnet deployment published in the client IDL. Other builds of the program
# declare their own id: set SHADOWLEND_PROGRAM_ID or use a deployment record.
SHADOWLEND_PROGRAM_ID = Pubkey.from_string("EKPFnwquVeawEBxn5iaNw9NXpyh1Axto7P3C1EHBXScy")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")

WSOL_MINT = Pubkey.from_string("So11111111111111111111111111111111111111112")
USDC_MINT = Pubkey.from_string("EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v")

POOL_SEED = b"pool_v2"
COLLATERAL_VAULT_SEED = b"collateral_vault"
BORROW_VAULT_SEED = b"borrow_vault"
OBLIGATION_SEED = b"obligation"
SIGN_PDA_SEED = b"ArciumSignerAccount"

MXE_SEED = b"MXEAccount"
MEMPOOL_SEED = b"Mempool"
EXECPOOL_SEED = b"Execpool"
COMPUTATION_SEED = b"ComputationAccount"
COMP_DEF_SEED = b"ComputationDefinitionAccount"
CLUSTER_SEED = b"Cluster"
FEE_POOL_SEED = b"FeePool"
CLOCK_SEED = b"ClockAccount"

MAX_SEEDS = 16
MAX_SEED_LEN = 32
PDA_MARKER = b"ProgramDerivedAddress"

COMP_DEF_NAMES = ("deposit", "borrow", "withdraw", "repay", "liquidate", "spend")


def find_address(seeds, program_id):
    seeds = [bytes(s) for s in seeds]
    # the bump byte is one more seed
    if len(seeds) >= MAX_SEEDS:
        raise AddressDerivationFailed(f"too many seeds: {len(seeds)}")
    for s in seeds:
        if len(s) > MAX_SEED_LEN:
            raise AddressDerivationFailed(f"seed longer than {MAX_SEED_LEN} bytes: {s[:8].hex()}...")
    base = b"".join(seeds)
    tail = bytes(program_id) + PDA_MARKER
    for bump in range(255, -1, -1):
        candidate = Pubkey.from_bytes(hashlib.sha256(base + bytes([bump]) + tail).digest())
        if not candidate.is_on_curve():
            return candidate, bump
    raise AddressDerivationFailed(f"no off-curve address for seeds under {program_id}")


def u32le(n):
    return struct.pack("<I", n)


def u64le(n):
    return struct.pack("<Q", n)


def comp_def_offset(name):
    return struct.unpack("<I", hashlib.sha256(name.encode()).digest()[:4])[0]


def pool_address(program_id=SHADOWLEND_PROGRAM_ID):
    return find_address([POOL_SEED], program_id)


def collateral_vault_address(pool, program_id=SHADOWLEND_PROGRAM_ID):
    return find_address([COLLATERAL_VAULT_SEED, bytes(pool)], program_id)


def borrow_vault_address(pool, program_id=SHADOWLEND_PROGRAM_ID):
    return find_address([BORROW_VAULT_SEED, bytes(pool)], program_id)


def obligation_address(user, pool, program_id=SHADOWLEND_PROGRAM_ID):
    return find_address([OBLIGATION_SEED, bytes(user), bytes(pool)], program_id)


def sign_pda_address(program_id=SHADOWLEND_PROGRAM_ID):
    return find_address([SIGN_PDA_SEED], program_id)


def associated_token_address(owner, mint):
    return find_address([bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)], ASSOCIATED_TOKEN_PROGRAM_ID)[0]


def mxe_address(program_id=SHADOWLEND_PROGRAM_ID):
    return find_address([MXE_SEED, bytes(program_id)], ARCIUM_PROGRAM_ID)


def mempool_address(cluster_offset):
    return find_address([MEMPOOL_SEED, u32le(cluster_offset)], ARCIUM_PROGRAM_ID)


def execpool_address(cluster_offset):
    return find_address([EXECPOOL_SEED, u32le(cluster_offset)], ARCIUM_PROGRAM_ID)


def computation_address(cluster_offset, computation_offset):
    return find_address([COMPUTATION_SEED, u32le(cluster_offset), u64le(computation_offset)], ARCIUM_PROGRAM_ID)


def comp_def_address(name, program_id=SHADOWLEND_PROGRAM_ID):
    return find_address([COMP_DEF_SEED, bytes(program_id), u32le(comp_def_offset(name))], ARCIUM_PROGRAM_ID)


def cluster_address(cluster_offset):
    return find_address([CLUSTER_SEED, u32le(cluster_offset)], ARCIUM_PROGRAM_ID)


def fee_pool_address():
    return find_address([FEE_POOL_SEED], ARCIUM_PROGRAM_ID)


def clock_address():
    return find_address([CLOCK_SEED], ARCIUM_PROGRAM_ID)


@dataclass(frozen=True)
class ProgramAddresses:
    """Addresses fixed for one deployment: program, pool, mints and vaults."""

    program_id: Pubkey
    pool: Pubkey
    collateral_mint: Pubkey
    borrow_mint: Pubkey
    collateral_vault: Pubkey
    borrow_vault: Pubkey
    sign_pda: Pubkey
    mxe: Pubkey

    @classmethod
    def derive(cls, program_id, collateral_mint=WSOL_MINT, borrow_mint=USDC_MINT, pool=None):
        if pool is None:
            pool = pool_address(program_id)[0]
        return cls(
            program_id=program_id,
            pool=pool,
            collateral_mint=collateral_mint,
            borrow_mint=borrow_mint,
            collateral_vault=collateral_vault_address(pool, program_id)[0],
            borrow_vault=borrow_vault_address(pool, program_id)[0],
            sign_pda=sign_pda_address(program_id)[0],
            mxe=mxe_address(program_id)[0],
        )

    def obligation(self, user):
        return obligation_address(user, self.pool, self.program_id)[0]
