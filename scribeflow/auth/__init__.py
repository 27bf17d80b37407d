from .identity import IdentityConfig, IdentityProvider, JWTIdentityProvider

__all__ = ["IdentityConfig", "IdentityProvider", "JWTIdentityProvider"]
