import json, hashlib, struct, os
from dataclasses import dataclass

import nacl.exceptions
import nacl.signing
from nacl.bindings import crypto_scalarmult, crypto_scalarmult_base
from nacl.public import PrivateKey
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCMSIV

from .errors import InvalidPublicKey, DecryptionMismatch, InvalidArgument


KEY_DERIVATION_MESSAGE = b"ShadowLend-Key-Derivation"
BLOCK_IV_DOMAIN = b"SHADOWLEND_BLOCK_IV_V1"
KEY_FILE = ".x25519-key.json"

KEY_LEN = 32
BLOCK_LEN = 32
U64_MAX = (1 << 64) - 1
U128_MAX = (1 << 128) - 1


@dataclass(frozen=True)
class KeyMaterial:
    private_key: bytes
    public_key: bytes

    @classmethod
    def generate(cls):
        sk = PrivateKey.generate()
        return cls(bytes(sk), bytes(sk.public_key))

    @classmethod
    def from_seed(cls, seed):
        if len(seed) != KEY_LEN:
            raise InvalidArgument(f"key seed must be {KEY_LEN} bytes, got {len(seed)}")
        return cls(bytes(seed), crypto_scalarmult_base(bytes(seed)))


@dataclass(frozen=True)
class EncryptedValue:
    ciphertext: bytes
    nonce: int
    index: int = 0


def derive_key_seed(signing_key, message=KEY_DERIVATION_MESSAGE):
    """Seed for a wallet-bound x25519 key: sha256 of the wallet's signature over a fixed message."""
    return hashlib.sha256(signing_key.sign(message).signature).digest()


def key_material_from_wallet(keypair):
    signing_key = nacl.signing.SigningKey(bytes(keypair)[:32])
    return KeyMaterial.from_seed(derive_key_seed(signing_key))


def derive_shared_secret(private_key, cluster_public_key):
    if len(private_key) != KEY_LEN:
        raise InvalidArgument(f"private key must be {KEY_LEN} bytes")
    if len(cluster_public_key) != KEY_LEN:
        raise InvalidPublicKey(f"public key must be {KEY_LEN} bytes, got {len(cluster_public_key)}")
    try:
        raw_shared = crypto_scalarmult(bytes(private_key), bytes(cluster_public_key))
    except nacl.exceptions.RuntimeError as e:
        raise InvalidPublicKey(f"key exchange failed: {e}") from e
    if raw_shared == bytes(KEY_LEN):
        raise InvalidPublicKey("public key is a low-order point")
    return hashlib.sha256(raw_shared).digest()


def _check_nonce(nonce):
    if not 0 <= nonce <= U128_MAX:
        raise InvalidArgument(f"nonce out of u128 range: {nonce}")
    return nonce.to_bytes(16, "little")


def _block_iv(nonce_bytes, index):
    return hashlib.sha256(BLOCK_IV_DOMAIN + nonce_bytes + struct.pack("<I", index)).digest()[:12]


def encrypt(shared_secret, values, nonce, start=0):
    """AES-GCM-SIV each u64 into its own 32-byte block (16 ciphertext + 16 tag).

    IV comes from (nonce, block index) so the output is deterministic. Under a
    repeated IV, SIV only reveals whether two plaintexts are equal.
    """
    nonce_bytes = _check_nonce(nonce)
    aead = AESGCMSIV(shared_secret)
    out = []
    for i, value in enumerate(values, start):
        if not 0 <= value <= U64_MAX:
            raise InvalidArgument(f"value out of u64 range: {value}")
        payload = int(value).to_bytes(8, "little") + bytes(8)
        ct = aead.encrypt(_block_iv(nonce_bytes, i), payload, nonce_bytes)
        out.append(EncryptedValue(ct, nonce, i))
    return out


def decrypt(shared_secret, ciphertext, nonce, index=0):
    if isinstance(ciphertext, EncryptedValue):
        ciphertext = ciphertext.ciphertext
    if len(ciphertext) != BLOCK_LEN:
        raise InvalidArgument(f"ciphertext must be {BLOCK_LEN} bytes, got {len(ciphertext)}")
    nonce_bytes = _check_nonce(nonce)
    try:
        plain = AESGCMSIV(shared_secret).decrypt(_block_iv(nonce_bytes, index), bytes(ciphertext), nonce_bytes)
    except InvalidTag as e:
        raise DecryptionMismatch("ciphertext does not match this secret and nonce") from e
    if plain[8:] != bytes(8):
        raise DecryptionMismatch("non-zero padding in decrypted block")
    return int.from_bytes(plain[:8], "little")


def save_key_material(km, path=KEY_FILE):
    data = {
        "publicKey": km.public_key.hex(),
        "privateKey": km.private_key.hex(),
    }
    old_umask = os.umask(0o077)
    try:
        with open(path, 'w') as f:
            json.dump(data, f, indent=2)
    finally:
        os.umask(old_umask)
    os.chmod(path, 0o600)
    return path


def load_key_material(path=KEY_FILE):
    with open(path, 'r') as f:
        d = json.load(f)
    km = KeyMaterial.from_seed(bytes.fromhex(d["privateKey"]))
    if d.get("publicKey") and bytes.fromhex(d["publicKey"]) != km.public_key:
        raise InvalidPublicKey(f"{path}: stored public key does not match private key")
    return km


def load_or_create_key_material(path=KEY_FILE, wallet=None):
    """Load the key file, or create it: wallet-bound when a keypair is given, random otherwise."""
    if os.path.exists(path):
        return load_key_material(path), False
    km = key_material_from_wallet(wallet) if wallet is not None else KeyMaterial.generate()
    save_key_material(km, path)
    return km, True
