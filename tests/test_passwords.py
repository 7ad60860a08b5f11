import unittest

from fileserve import passwords
from fileserve.errors import InvalidInputError


class PasswordCredentialTests(unittest.TestCase):
    def test_hash_then_verify(self):
        credential = passwords.hash_password("secret")
        self.assertTrue(passwords.verify_password("secret", credential))
        self.assertFalse(passwords.verify_password("Secret", credential))
        self.assertFalse(passwords.verify_password("", credential))

    def test_hash_is_salted_and_self_describing(self):
        first = passwords.hash_password("secret")
        second = passwords.hash_password("secret")
        self.assertNotEqual(first, second)
        self.assertTrue(first.startswith("scrypt:"))
        self.assertNotIn("secret", first)

    def test_malformed_credentials_never_raise(self):
        for credential in ["", "not-a-hash", "$$", "scrypt:x:y:z$salt$hash", "md5$a$b", None, 42]:
            with self.subTest(credential=credential):
                self.assertFalse(passwords.verify_password("secret", credential))

    def test_non_string_password_fails_verification(self):
        credential = passwords.hash_password("secret")
        self.assertFalse(passwords.verify_password(None, credential))
        self.assertFalse(passwords.verify_password(b"secret", credential))

    def test_oversized_password_is_rejected(self):
        oversized = "x" * (passwords.MAX_PASSWORD_LENGTH + 1)
        with self.assertRaises(InvalidInputError):
            passwords.hash_password(oversized)
        credential = passwords.hash_password("secret")
        self.assertFalse(passwords.verify_password(oversized, credential))

    def test_non_string_password_cannot_be_hashed(self):
        with self.assertRaises(InvalidInputError):
            passwords.hash_password(1234)

    def test_burn_verification_is_silent(self):
        self.assertIsNone(passwords.burn_verification("anything"))
        self.assertIsNone(passwords.burn_verification(None))


if __name__ == "__main__":
    unittest.main()
