import base64

import pytest

from querysafe.exceptions import ConfigurationError, CredentialDecryptionError
from querysafe.security.encryption import CredentialCipher, generate_encryption_key

KEY = "0f" * 32


class TestCredentialCipher:
    def test_decrypts_what_it_encrypts(self):
        cipher = CredentialCipher(KEY)

        token = cipher.encrypt("p@ss:word")

        assert cipher.decrypt(token) == "p@ss:word"
        assert "p@ss" not in token

    def test_token_layout(self):
        token = CredentialCipher(KEY).encrypt("secret")

        iv, ciphertext, tag = base64.b64decode(token).decode("ascii").split(":")

        assert len(bytes.fromhex(iv)) == 16
        assert len(bytes.fromhex(tag)) == 16
        assert len(bytes.fromhex(ciphertext)) == len("secret")

    def test_fresh_iv_per_encryption(self):
        cipher = CredentialCipher(KEY)

        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_tampered_token_is_rejected(self):
        cipher = CredentialCipher(KEY)
        iv, ciphertext, tag = base64.b64decode(cipher.encrypt("secret")).decode("ascii").split(":")
        flipped = format(int(ciphertext[:2], 16) ^ 0x01, "02x") + ciphertext[2:]
        tampered = base64.b64encode(f"{iv}:{flipped}:{tag}".encode("ascii")).decode("ascii")

        with pytest.raises(CredentialDecryptionError):
            cipher.decrypt(tampered)

    def test_wrong_key_is_rejected(self):
        token = CredentialCipher(KEY).encrypt("secret")

        with pytest.raises(CredentialDecryptionError):
            CredentialCipher(generate_encryption_key()).decrypt(token)

    @pytest.mark.parametrize("token", ["not base64!", base64.b64encode(b"only:two").decode("ascii"), ""])
    def test_malformed_tokens(self, token):
        with pytest.raises(CredentialDecryptionError):
            CredentialCipher(KEY).decrypt(token)

    @pytest.mark.parametrize("key", ["", "abcd", "zz" * 32])
    def test_bad_keys(self, key):
        with pytest.raises(ConfigurationError):
            CredentialCipher(key)

    def test_generated_key_is_usable(self):
        key = generate_encryption_key()

        assert len(key) == 64
        assert CredentialCipher(key).decrypt(CredentialCipher(key).encrypt("x")) == "x"
