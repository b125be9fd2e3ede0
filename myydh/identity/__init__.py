from .auth import BasicAuthGate, BearerTokenAuthenticator, generate_token, hash_token
from .models import BearerToken

__all__ = [
    "BasicAuthGate",
    "BearerToken",
    "BearerTokenAuthenticator",
    "generate_token",
    "hash_token",
]
