from .tokens import Identity, IdentityVerifier, TokenError

__all__ = ["Identity", "IdentityVerifier", "TokenError"]
