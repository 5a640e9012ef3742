from .tokens import Audience, Credential, IdentityProvider, TokenManager
from .identity import (
    CertificateIdentity,
    DeviceCodeIdentity,
    StaticTokenIdentity,
    identity_from_config,
)

__all__ = [
    "Audience",
    "Credential",
    "IdentityProvider",
    "TokenManager",
    "CertificateIdentity",
    "DeviceCodeIdentity",
    "StaticTokenIdentity",
    "identity_from_config",
]
