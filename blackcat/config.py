"""
Configuration module for the BlackCat access layer.
Defines API endpoints, throttling, caching and authentication settings.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Optional


# ─── Remote API Endpoints ───────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"
GRAPH_BETA_VERSION = "beta"

ARM_BASE_URL = "https://management.azure.com"
ARM_KEYVAULT_API_VERSION = "2023-07-01"

KEYVAULT_DNS_SUFFIX = "vault.azure.net"
KEYVAULT_API_VERSION = "7.4"

# Rate limiting / throttling
DEFAULT_THROTTLE = 10             # Parallel workers in a fan-out
MAX_RETRIES = 5                   # Retry count for throttled requests
INITIAL_BACKOFF_SECONDS = 2.0     # First retry delay
MAX_BACKOFF_SECONDS = 120.0       # Cap on exponential backoff
BACKOFF_MULTIPLIER = 2.0          # Exponential factor
THROTTLE_STATUS_CODES = (429, 503, 504)

# Pagination
MAX_PAGES_PER_ENDPOINT = 10000    # Safety cap on pagination loops

# Batch
BATCH_SIZE = 20                   # Graph $batch max is 20 requests

# Tokens
TOKEN_REFRESH_GUARD_SECONDS = 300  # Refresh this long before expiry

# Cache
COMPRESSION_THRESHOLD_BYTES = 1024
DEFAULT_SEGMENT_MAX_ENTRIES = 1000
DEFAULT_CACHE_TTL_SECONDS = 900

CERT_PASSWORD_ENV = "BLACKCAT_CERT_PASSWORD"


# ─── Authentication ─────────────────────────────────────────────────────────

@dataclass
class CertificateAuth:
    """Certificate-based app-only authentication configuration."""
    tenant_id: str
    client_id: str
    certificate_path: str          # Path to base64-encoded PFX
    certificate_password: str = "" # Falls back to env var, then prompt


@dataclass
class DelegatedAuth:
    """Delegated (device code) authentication configuration."""
    tenant_id: str
    client_id: str = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"  # Azure CLI public client
    interactive: bool = True


@dataclass
class AuthConfig:
    """Authentication configuration — supports both modes."""
    mode: str = "certificate"  # "certificate" or "delegated"
    certificate: Optional[CertificateAuth] = None
    delegated: Optional[DelegatedAuth] = None


# ─── Cache ──────────────────────────────────────────────────────────────────

@dataclass
class CacheConfig:
    """In-process cache settings. Segments map name -> max entries."""
    enabled: bool = True
    default_max_entries: int = DEFAULT_SEGMENT_MAX_ENTRIES
    default_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    compression_threshold: int = COMPRESSION_THRESHOLD_BYTES
    segments: dict[str, int] = field(default_factory=lambda: {
        "graph": 5000,
        "arm": 1000,
        "keyvault": 2000,
    })


# ─── Master Configuration ───────────────────────────────────────────────────

@dataclass
class AccessConfig:
    """Top-level configuration for the access layer."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    throttle: int = DEFAULT_THROTTLE
    request_timeout: float = 60.0
    connect_timeout: float = 30.0
    verbose: bool = False

    @classmethod
    def from_file(cls, path: str) -> "AccessConfig":
        """Load configuration from a JSON file."""
        with open(path, "r") as f:
            data = json.load(f)
        config = cls()
        if "auth" in data:
            auth_data = data["auth"]
            config.auth.mode = auth_data.get("mode", "certificate")
            if "certificate" in auth_data:
                c = auth_data["certificate"]
                config.auth.certificate = CertificateAuth(
                    tenant_id=c["tenant_id"],
                    client_id=c["client_id"],
                    certificate_path=c.get("certificate_path", "./base64.txt"),
                    certificate_password=c.get("certificate_password", ""),
                )
            if "delegated" in auth_data:
                d = auth_data["delegated"]
                config.auth.delegated = DelegatedAuth(
                    tenant_id=d["tenant_id"],
                    client_id=d.get("client_id", DelegatedAuth.client_id),
                    interactive=d.get("interactive", True),
                )
        if "cache" in data:
            for k, v in data["cache"].items():
                if hasattr(config.cache, k):
                    setattr(config.cache, k, v)
        config.throttle = data.get("throttle", DEFAULT_THROTTLE)
        config.request_timeout = data.get("request_timeout", 60.0)
        config.connect_timeout = data.get("connect_timeout", 30.0)
        config.verbose = data.get("verbose", False)
        return config
