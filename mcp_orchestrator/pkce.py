"""PKCE (RFC 7636) helpers for the authorization-code flow."""

import string
import uuid
from dataclasses import dataclass

from authlib.common.security import generate_token
from authlib.oauth2.rfc7636 import create_s256_code_challenge

# RFC 7636 section 4.1 unreserved characters
UNRESERVED_CHARACTERS = string.ascii_letters + string.digits + "-._~"
CODE_VERIFIER_LENGTH = 64


@dataclass(frozen=True)
class PKCEPair:
    code_verifier: str
    code_challenge: str
    code_challenge_method: str = "S256"


def generate_code_verifier(length: int = CODE_VERIFIER_LENGTH) -> str:
    if not 43 <= length <= 128:
        raise ValueError("code verifier length must be between 43 and 128")
    return generate_token(length, UNRESERVED_CHARACTERS)


def generate_code_challenge(code_verifier: str) -> str:
    """Base64URL(SHA-256(verifier)) without padding."""
    return create_s256_code_challenge(code_verifier)


def generate_pkce() -> PKCEPair:
    verifier = generate_code_verifier()
    return PKCEPair(code_verifier=verifier, code_challenge=generate_code_challenge(verifier))


def generate_state() -> str:
    return str(uuid.uuid4())
