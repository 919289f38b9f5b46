"""Binary layout of lending program instructions.

Every buffer starts with an 8-byte discriminator followed by fixed-width
little-endian arguments. u128 values go on the wire as two u64 words, low
word first.
"""

import struct
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from .errors import UnknownOperation, MalformedInstruction, InvalidArgument


DISC_LEN = 8
PUBKEY_LEN = 32
CIPHERTEXT_LEN = 32
SIGNATURE_LEN = 64
STATE_SLOTS = 3

U16_MAX = (1 << 16) - 1
U64_MAX = (1 << 64) - 1
U128_MAX = (1 << 128) - 1


class Operation(Enum):
    DEPOSIT = "deposit"
    BORROW = "borrow"
    WITHDRAW = "withdraw"
    REPAY = "repay"
    LIQUIDATE = "liquidate"
    SPEND = "spend"
    DEPOSIT_CALLBACK = "deposit_callback"
    BORROW_CALLBACK = "borrow_callback"
    WITHDRAW_CALLBACK = "withdraw_callback"
    REPAY_CALLBACK = "repay_callback"
    LIQUIDATE_CALLBACK = "liquidate_callback"
    SPEND_CALLBACK = "spend_callback"

    @property
    def is_callback(self):
        return self.value.endswith("_callback")

    @property
    def confidential(self):
        return self in (Operation.BORROW, Operation.WITHDRAW, Operation.SPEND)

    @property
    def callback(self):
        return Operation(self.value + "_callback")


DISCRIMINATORS = {
    Operation.DEPOSIT: bytes([242, 35, 198, 137, 82, 225, 242, 182]),
    Operation.BORROW: bytes([228, 253, 131, 202, 207, 116, 89, 18]),
    Operation.WITHDRAW: bytes([183, 18, 70, 156, 148, 109, 161, 34]),
    Operation.REPAY: bytes([234, 103, 67, 82, 208, 234, 219, 166]),
    Operation.LIQUIDATE: bytes([223, 179, 226, 125, 48, 46, 39, 74]),
    Operation.SPEND: bytes([242, 205, 255, 87, 101, 217, 245, 57]),
    Operation.DEPOSIT_CALLBACK: bytes([203, 84, 215, 177, 14, 39, 30, 203]),
    Operation.BORROW_CALLBACK: bytes([191, 62, 124, 139, 185, 151, 38, 244]),
    Operation.WITHDRAW_CALLBACK: bytes([75, 124, 115, 155, 173, 179, 40, 16]),
    Operation.REPAY_CALLBACK: bytes([104, 59, 108, 247, 253, 38, 145, 166]),
    Operation.LIQUIDATE_CALLBACK: bytes([156, 82, 188, 61, 21, 86, 148, 80]),
    Operation.SPEND_CALLBACK: bytes([179, 68, 139, 51, 46, 97, 98, 112]),
}

OPERATIONS_BY_DISC = {d: op for op, d in DISCRIMINATORS.items()}

# encode-only administrative instructions
ADMIN_DISCRIMINATORS = {
    "initialize_pool": bytes([95, 180, 10, 172, 84, 174, 232, 40]),
    "close_pool": bytes([140, 189, 209, 23, 239, 62, 239, 11]),
    "init_deposit_comp_def": bytes([115, 50, 97, 116, 222, 75, 121, 6]),
    "init_borrow_comp_def": bytes([23, 160, 202, 254, 35, 121, 45, 248]),
    "init_withdraw_comp_def": bytes([123, 165, 129, 195, 92, 182, 226, 232]),
    "init_repay_comp_def": bytes([48, 65, 238, 85, 56, 13, 161, 220]),
    "init_liquidate_comp_def": bytes([173, 194, 178, 252, 128, 111, 75, 5]),
    "init_spend_comp_def": bytes([165, 14, 98, 5, 161, 200, 231, 67]),
}


@dataclass(frozen=True)
class DepositArgs:
    computation_offset: int
    amount: int
    user_pubkey: bytes
    user_nonce: int


@dataclass(frozen=True)
class ConfidentialArgs:
    """Arguments shared by borrow, withdraw and spend."""

    computation_offset: int
    encrypted_amount: bytes
    user_pubkey: bytes
    user_nonce: int


@dataclass(frozen=True)
class RepayArgs:
    computation_offset: int
    amount: int


@dataclass(frozen=True)
class LiquidateArgs:
    computation_offset: int
    repay_amount: int
    victim_pubkey: bytes
    victim_nonce: int


@dataclass(frozen=True)
class ComputationOutput:
    encryption_key: bytes
    nonce: int
    ciphertexts: Tuple[bytes, ...]
    revealed: Tuple[int, ...] = ()


@dataclass(frozen=True)
class CallbackArgs:
    """SignedComputationOutputs: Success(output, signature) or Failure (output is None)."""

    output: Optional[ComputationOutput] = None
    signature: bytes = b""

    @property
    def success(self):
        return self.output is not None


# per-operation struct layout after the discriminator; "N" marks a split u128
REQUEST_LAYOUTS = {
    Operation.DEPOSIT: (DepositArgs, ("Q", "Q", "32s", "N")),
    Operation.BORROW: (ConfidentialArgs, ("Q", "32s", "32s", "N")),
    Operation.WITHDRAW: (ConfidentialArgs, ("Q", "32s", "32s", "N")),
    Operation.SPEND: (ConfidentialArgs, ("Q", "32s", "32s", "N")),
    Operation.REPAY: (RepayArgs, ("Q", "Q")),
    Operation.LIQUIDATE: (LiquidateArgs, ("Q", "Q", "32s", "N")),
}

# plaintext fields the MPC result reveals alongside the encrypted state
REVEALED_LAYOUTS = {
    Operation.DEPOSIT_CALLBACK: "",
    Operation.REPAY_CALLBACK: "",
    Operation.BORROW_CALLBACK: "B",
    Operation.WITHDRAW_CALLBACK: "BQ",
    Operation.SPEND_CALLBACK: "BQ",
    Operation.LIQUIDATE_CALLBACK: "QQQ",
}

SUCCESS_TAG = 0
FAILURE_TAG = 1


def _struct_format(fields):
    return "<" + "".join("QQ" if f == "N" else f for f in fields)


def _check_uint(name, value, limit):
    if not isinstance(value, int) or not 0 <= value <= limit:
        raise InvalidArgument(f"{name} out of range: {value!r}")


def _check_bytes(name, value, length):
    if not isinstance(value, (bytes, bytearray)) or len(value) != length:
        got = len(value) if isinstance(value, (bytes, bytearray)) else type(value).__name__
        raise InvalidArgument(f"{name} must be {length} bytes, got {got}")


def split_u128(n):
    return n & U64_MAX, n >> 64


def join_u128(lo, hi):
    return lo | (hi << 64)


def request_size(op):
    return DISC_LEN + struct.calcsize(_struct_format(REQUEST_LAYOUTS[op][1]))


def _encode_request(op, args):
    cls, fields = REQUEST_LAYOUTS[op]
    if not isinstance(args, cls):
        raise InvalidArgument(f"{op.value} expects {cls.__name__}, got {type(args).__name__}")
    values = []
    for name, f in zip(cls.__dataclass_fields__, fields):
        v = getattr(args, name)
        if f == "Q":
            _check_uint(name, v, U64_MAX)
            values.append(v)
        elif f == "N":
            _check_uint(name, v, U128_MAX)
            values.extend(split_u128(v))
        else:
            _check_bytes(name, v, int(f[:-1]))
            values.append(bytes(v))
    return DISCRIMINATORS[op] + struct.pack(_struct_format(fields), *values)


def _decode_request(op, body):
    cls, fields = REQUEST_LAYOUTS[op]
    fmt = _struct_format(fields)
    if len(body) != struct.calcsize(fmt):
        raise MalformedInstruction(f"{op.value}: expected {struct.calcsize(fmt)} argument bytes, got {len(body)}")
    raw = list(struct.unpack(fmt, body))
    values = []
    for f in fields:
        if f == "N":
            lo, hi = raw.pop(0), raw.pop(0)
            values.append(join_u128(lo, hi))
        else:
            values.append(raw.pop(0))
    return cls(*values)


def _output_format(op):
    return "<32sQQ" + "32s" * STATE_SLOTS + REVEALED_LAYOUTS[op]


def _encode_callback(op, args):
    if not isinstance(args, CallbackArgs):
        raise InvalidArgument(f"{op.value} expects CallbackArgs, got {type(args).__name__}")
    if args.output is None:
        return DISCRIMINATORS[op] + bytes([FAILURE_TAG])
    out = args.output
    _check_bytes("encryption_key", out.encryption_key, PUBKEY_LEN)
    _check_uint("nonce", out.nonce, U128_MAX)
    if len(out.ciphertexts) != STATE_SLOTS:
        raise InvalidArgument(f"expected {STATE_SLOTS} ciphertexts, got {len(out.ciphertexts)}")
    for ct in out.ciphertexts:
        _check_bytes("ciphertext", ct, CIPHERTEXT_LEN)
    layout = REVEALED_LAYOUTS[op]
    if len(out.revealed) != len(layout):
        raise InvalidArgument(f"{op.value} reveals {len(layout)} fields, got {len(out.revealed)}")
    for f, v in zip(layout, out.revealed):
        _check_uint("revealed", v, 0xFF if f == "B" else U64_MAX)
    _check_bytes("signature", args.signature, SIGNATURE_LEN)
    body = struct.pack(_output_format(op), bytes(out.encryption_key), *split_u128(out.nonce),
                       *[bytes(ct) for ct in out.ciphertexts], *out.revealed)
    return DISCRIMINATORS[op] + bytes([SUCCESS_TAG]) + body + bytes(args.signature)


def _decode_callback(op, body):
    if not body:
        raise MalformedInstruction(f"{op.value}: missing result tag")
    tag, rest = body[0], body[1:]
    if tag == FAILURE_TAG:
        if rest:
            raise MalformedInstruction(f"{op.value}: {len(rest)} trailing bytes after Failure")
        return CallbackArgs()
    if tag != SUCCESS_TAG:
        raise MalformedInstruction(f"{op.value}: unknown result tag {tag}")
    fmt = _output_format(op)
    size = struct.calcsize(fmt)
    if len(rest) != size + SIGNATURE_LEN:
        raise MalformedInstruction(f"{op.value}: expected {size + SIGNATURE_LEN} result bytes, got {len(rest)}")
    raw = struct.unpack(fmt, rest[:size])
    output = ComputationOutput(
        encryption_key=raw[0],
        nonce=join_u128(raw[1], raw[2]),
        ciphertexts=tuple(raw[3:3 + STATE_SLOTS]),
        revealed=tuple(raw[3 + STATE_SLOTS:]),
    )
    return CallbackArgs(output, rest[size:])


def encode_instruction(op, args):
    if op not in DISCRIMINATORS:
        raise UnknownOperation(f"no discriminator for {op!r}")
    if op.is_callback:
        return _encode_callback(op, args)
    return _encode_request(op, args)


def decode_instruction(data):
    data = bytes(data)
    if len(data) < DISC_LEN:
        raise MalformedInstruction(f"buffer too short for discriminator: {len(data)} bytes")
    op = OPERATIONS_BY_DISC.get(data[:DISC_LEN])
    if op is None:
        raise UnknownOperation(f"unknown discriminator {data[:DISC_LEN].hex()}")
    body = data[DISC_LEN:]
    if op.is_callback:
        return op, _decode_callback(op, body)
    return op, _decode_request(op, body)


def encode_initialize_pool(ltv_bps, liquidation_threshold):
    _check_uint("ltv_bps", ltv_bps, U16_MAX)
    _check_uint("liquidation_threshold", liquidation_threshold, U16_MAX)
    return ADMIN_DISCRIMINATORS["initialize_pool"] + struct.pack("<HH", ltv_bps, liquidation_threshold)


def encode_close_pool():
    return ADMIN_DISCRIMINATORS["close_pool"]


def encode_init_comp_def(name):
    key = f"init_{name}_comp_def"
    if key not in ADMIN_DISCRIMINATORS:
        raise UnknownOperation(f"no computation definition named {name!r}")
    return ADMIN_DISCRIMINATORS[key]
