import unittest
import jwt
from common.error_handling import ValidationFailed
from common.security import check_password, hash_password, mint_user_jwt, verify_token
from common.settings import Settings


class TestPasswords(unittest.TestCase):

    def test_hash_and_check(self):
        encoded = hash_password("s3cret")
        self.assertTrue(encoded.startswith("$2b$"))
        self.assertTrue(check_password("s3cret", encoded))
        self.assertFalse(check_password("S3cret", encoded))

    def test_salted(self):
        self.assertNotEqual(hash_password("same"), hash_password("same"))

    def test_malformed_hash(self):
        self.assertFalse(check_password("x", "not-a-hash"))
        self.assertFalse(check_password("x", "md5$1$salt$abc"))

    def test_overlong_password_rejected(self):
        with self.assertRaises(ValidationFailed):
            hash_password("x" * 73)


class TestSessionTokens(unittest.TestCase):

    def setUp(self):
        self.settings = Settings(jwt_secret="unit-test", jwt_ttl_seconds=60)

    def test_roundtrip(self):
        token = mint_user_jwt(42, settings=self.settings)
        claims = verify_token(token, settings=self.settings)
        self.assertEqual(claims["sub"], "42")

    def test_wrong_secret(self):
        token = mint_user_jwt(42, settings=self.settings)
        with self.assertRaises(jwt.InvalidTokenError):
            verify_token(token, settings=Settings(jwt_secret="other"))

    def test_expired(self):
        expired = Settings(jwt_secret="unit-test", jwt_ttl_seconds=-10)
        token = mint_user_jwt(42, settings=expired)
        with self.assertRaises(jwt.ExpiredSignatureError):
            verify_token(token, settings=self.settings)


class TestSettings(unittest.TestCase):

    def test_run_address(self):
        self.assertEqual((Settings(run_address="localhost:9090").host, Settings(run_address="localhost:9090").port),
                         ("localhost", 9090))
        self.assertEqual(Settings(run_address=":8000").host, "0.0.0.0")
        self.assertEqual(Settings(run_address="example.org").port, 8080)
