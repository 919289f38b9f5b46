import json
import os
import stat

import pytest
from nacl.signing import SigningKey

from shadowlend.ciphers import (
    KeyMaterial, EncryptedValue, derive_shared_secret, derive_key_seed, encrypt, decrypt,
    save_key_material, load_key_material, load_or_create_key_material, key_material_from_wallet,
)
from shadowlend.errors import InvalidPublicKey, DecryptionMismatch, InvalidArgument


class TestSharedSecret:
    def test_both_sides_agree(self, user_keys, mxe_keys):
        a = derive_shared_secret(user_keys.private_key, mxe_keys.public_key)
        b = derive_shared_secret(mxe_keys.private_key, user_keys.public_key)
        assert a == b
        assert len(a) == 32

    def test_deterministic(self, user_keys, mxe_keys):
        assert derive_shared_secret(user_keys.private_key, mxe_keys.public_key) == \
            derive_shared_secret(user_keys.private_key, mxe_keys.public_key)

    def test_wrong_length(self, user_keys):
        with pytest.raises(InvalidPublicKey):
            derive_shared_secret(user_keys.private_key, b"\x01" * 31)

    def test_low_order_point(self, user_keys):
        with pytest.raises(InvalidPublicKey):
            derive_shared_secret(user_keys.private_key, bytes(32))


class TestEncrypt:
    def test_scenario_round_trip(self, secret):
        n = 123456789
        [ct] = encrypt(secret, [1000], n)
        assert isinstance(ct, EncryptedValue)
        assert len(ct.ciphertext) == 32
        assert decrypt(secret, ct, n) == 1000

    def test_wrong_nonce_is_a_mismatch(self, secret):
        n = 77
        [ct] = encrypt(secret, [1000], n)
        with pytest.raises(DecryptionMismatch):
            decrypt(secret, ct.ciphertext, n + 1)

    def test_wrong_secret_is_a_mismatch(self, secret):
        [ct] = encrypt(secret, [5], 1)
        with pytest.raises(DecryptionMismatch):
            decrypt(bytes(32), ct.ciphertext, 1)

    def test_deterministic(self, secret):
        assert encrypt(secret, [42], 3) == encrypt(secret, [42], 3)

    def test_same_nonce_does_not_share_keystream(self, secret):
        a = encrypt(secret, [1000], 5)[0].ciphertext
        b = encrypt(secret, [2000], 5)[0].ciphertext
        xored = bytes(x ^ y for x, y in zip(a[:16], b[:16]))
        assert xored != (1000 ^ 2000).to_bytes(16, "little")
        assert decrypt(secret, a, 5) == 1000 and decrypt(secret, b, 5) == 2000

    def test_nonce_sensitive(self, secret):
        assert encrypt(secret, [42], 3)[0].ciphertext != encrypt(secret, [42], 4)[0].ciphertext

    def test_blocks_are_independent(self, secret):
        blocks = encrypt(secret, [42, 42, 42], 9)
        assert len({b.ciphertext for b in blocks}) == 3
        assert [decrypt(secret, b, 9, b.index) for b in blocks] == [42, 42, 42]

    def test_block_index_matters(self, secret):
        blocks = encrypt(secret, [1, 2], 9)
        with pytest.raises(DecryptionMismatch):
            decrypt(secret, blocks[1].ciphertext, 9, 0)

    @pytest.mark.parametrize("value", [0, 1, 2 ** 63, 2 ** 64 - 1])
    def test_u64_edges(self, secret, value):
        [ct] = encrypt(secret, [value], 2 ** 128 - 1)
        assert decrypt(secret, ct, 2 ** 128 - 1) == value

    def test_out_of_range(self, secret):
        with pytest.raises(InvalidArgument):
            encrypt(secret, [2 ** 64], 0)
        with pytest.raises(InvalidArgument):
            encrypt(secret, [1], 2 ** 128)
        with pytest.raises(InvalidArgument):
            encrypt(secret, [-1], 0)

    def test_tampered_block(self, secret):
        [ct] = encrypt(secret, [500000], 11)
        bad = bytes([ct.ciphertext[0] ^ 1]) + ct.ciphertext[1:]
        with pytest.raises(DecryptionMismatch):
            decrypt(secret, bad, 11)

    def test_bad_length(self, secret):
        with pytest.raises(InvalidArgument):
            decrypt(secret, b"\x00" * 31, 0)


class TestKeyMaterial:
    def test_from_seed_is_stable(self):
        assert KeyMaterial.from_seed(b"\x05" * 32) == KeyMaterial.from_seed(b"\x05" * 32)

    def test_generate_differs(self):
        assert KeyMaterial.generate() != KeyMaterial.generate()

    def test_bad_seed(self):
        with pytest.raises(InvalidArgument):
            KeyMaterial.from_seed(b"\x05" * 16)

    def test_wallet_bound_seed(self):
        sk = SigningKey(b"\x01" * 32)
        assert derive_key_seed(sk) == derive_key_seed(sk)
        assert derive_key_seed(sk) != derive_key_seed(SigningKey(b"\x02" * 32))

    def test_save_and_load(self, tmp_path, user_keys):
        path = str(tmp_path / ".x25519-key.json")
        save_key_material(user_keys, path)
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert load_key_material(path) == user_keys

    def test_load_detects_mismatched_public_key(self, tmp_path, user_keys, mxe_keys):
        path = tmp_path / "k.json"
        path.write_text(json.dumps({"privateKey": user_keys.private_key.hex(), "publicKey": mxe_keys.public_key.hex()}))
        with pytest.raises(InvalidPublicKey):
            load_key_material(str(path))

    def test_load_or_create(self, tmp_path):
        path = str(tmp_path / "k.json")
        km, created = load_or_create_key_material(path)
        assert created
        again, created = load_or_create_key_material(path)
        assert not created
        assert again == km

    def test_create_from_wallet_is_deterministic(self, tmp_path, payer):
        first, created = load_or_create_key_material(str(tmp_path / "a.json"), payer)
        second, _ = load_or_create_key_material(str(tmp_path / "b.json"), payer)
        assert created
        assert first == second == key_material_from_wallet(payer)
