"""
Identity providers — Certificate-based app-only and delegated device-code auth.
Uses MSAL for token acquisition against the Microsoft Identity Platform.
The token manager treats these as opaque: acquire_credential(audience).
"""

from __future__ import annotations

import base64
import getpass
import logging
import os
import time
from typing import Callable, Mapping, Optional

from cryptography.hazmat.primitives.serialization import pkcs12, Encoding, PrivateFormat, NoEncryption
from cryptography.hazmat.primitives.hashes import SHA1
import msal

from ..config import AuthConfig, CertificateAuth, DelegatedAuth, CERT_PASSWORD_ENV
from ..errors import AuthError, InteractionRequiredError
from .tokens import Audience, Credential, IdentityProvider

logger = logging.getLogger("blackcat.auth.identity")

AUTHORITY_TEMPLATE = "https://login.microsoftonline.com/{tenant_id}"

# MSAL error codes that can only be resolved by the user signing in again
INTERACTION_ERRORS = {
    "interaction_required",
    "login_required",
    "consent_required",
    "invalid_grant",
}


def credential_from_msal(
    audience: Audience,
    result: Optional[dict],
    now: Optional[float] = None,
) -> Credential:
    """Turn an MSAL token response into a Credential, or raise."""
    if result and "access_token" in result:
        issued = time.time() if now is None else now
        return Credential(
            audience=audience,
            token=result["access_token"],
            expires_at=issued + float(result.get("expires_in", 3600)),
        )

    result = result or {}
    error = result.get("error", "")
    description = result.get("error_description", error or "No token returned")
    if error in INTERACTION_ERRORS:
        raise InteractionRequiredError(description, audience.name)
    raise AuthError(f"Token acquisition failed: {description}", audience.name)


class CertificateIdentity:
    """App-only client credentials signed with a base64-encoded PFX."""

    def __init__(self, config: CertificateAuth, password_prompt: Callable[[str], str] = getpass.getpass):
        self.config = config
        self._password_prompt = password_prompt
        self._app: Optional[msal.ConfidentialClientApplication] = None

    def _load_certificate(self) -> dict:
        """Load the PFX and return the MSAL client_credential mapping."""
        cert_path = self.config.certificate_path
        password = self.config.certificate_password
        if not password:
            password = os.environ.get(CERT_PASSWORD_ENV, "")
        if not password:
            password = self._password_prompt("Enter the certificate password: ")

        try:
            with open(cert_path, "r") as f:
                cert_base64 = f.read().strip()

            cert_bytes = base64.b64decode(cert_base64)
            password_bytes = password.encode("utf-8") if password else None

            private_key, certificate, _ = pkcs12.load_key_and_certificates(
                cert_bytes, password_bytes
            )
        except FileNotFoundError:
            raise AuthError(f"Certificate file not found: {cert_path}.")
        except ValueError as e:
            raise AuthError(f"Failed to load certificate: {e}")

        if private_key is None or certificate is None:
            raise AuthError(f"Certificate file {cert_path} has no key/certificate pair.")

        private_key_pem = private_key.private_bytes(
            Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
        ).decode("utf-8")
        thumbprint = certificate.fingerprint(SHA1()).hex()
        logger.info(f"Certificate loaded. Thumbprint: {thumbprint}")

        return {"thumbprint": thumbprint, "private_key": private_key_pem}

    def _client(self) -> msal.ConfidentialClientApplication:
        if self._app is None:
            self._app = msal.ConfidentialClientApplication(
                client_id=self.config.client_id,
                authority=AUTHORITY_TEMPLATE.format(tenant_id=self.config.tenant_id),
                client_credential=self._load_certificate(),
            )
        return self._app

    def acquire_credential(self, audience: Audience) -> Credential:
        logger.info(f"Authenticating with certificate for {audience.name}...")
        result = self._client().acquire_token_for_client(scopes=[audience.scope])
        return credential_from_msal(audience, result)


class DeviceCodeIdentity:
    """
    Delegated sign-in. Uses the MSAL account cache silently when possible and
    falls back to the device-code flow only when interactive use is allowed.
    """

    def __init__(self, config: DelegatedAuth, app: Optional[msal.PublicClientApplication] = None):
        self.config = config
        self._app = app

    def _client(self) -> msal.PublicClientApplication:
        if self._app is None:
            self._app = msal.PublicClientApplication(
                client_id=self.config.client_id,
                authority=AUTHORITY_TEMPLATE.format(tenant_id=self.config.tenant_id),
            )
        return self._app

    def acquire_credential(self, audience: Audience) -> Credential:
        app = self._client()
        scopes = [audience.scope]

        accounts = app.get_accounts()
        if accounts:
            result = app.acquire_token_silent(scopes, account=accounts[0])
            if result and "access_token" in result:
                return credential_from_msal(audience, result)
            logger.debug(f"Silent token acquisition failed for {audience.name}")

        if not self.config.interactive:
            raise InteractionRequiredError(
                "No cached sign-in can be used silently.", audience.name
            )

        logger.info("Initiating device code authentication flow...")
        flow = app.initiate_device_flow(scopes=scopes)
        if "user_code" not in flow:
            raise AuthError(
                f"Device code flow failed: {flow.get('error_description', 'Unknown')}",
                audience.name,
            )

        print(f"\n{'='*60}")
        print(f"  To sign in, open: {flow['verification_uri']}")
        print(f"  Enter code: {flow['user_code']}")
        print(f"{'='*60}\n")

        result = app.acquire_token_by_device_flow(flow)
        return credential_from_msal(audience, result)


class StaticTokenIdentity:
    """Pre-acquired tokens, e.g. handed over from another tool."""

    def __init__(self, tokens: Mapping[Audience, str], lifetime_seconds: float = 3600.0):
        self._tokens = dict(tokens)
        self._expires_at = time.time() + lifetime_seconds

    def acquire_credential(self, audience: Audience) -> Credential:
        token = self._tokens.get(audience)
        if not token:
            raise InteractionRequiredError(
                "No token was supplied for this audience.",
                audience.name,
                hint=f"Provide a token for {audience.value} or use certificate/delegated auth.",
            )
        return Credential(audience=audience, token=token, expires_at=self._expires_at)


def identity_from_config(config: AuthConfig) -> IdentityProvider:
    """Build the identity provider for the configured auth mode."""
    if config.mode == "certificate":
        if not config.certificate:
            raise AuthError("Certificate auth config not provided.")
        return CertificateIdentity(config.certificate)
    elif config.mode == "delegated":
        if not config.delegated:
            raise AuthError("Delegated auth config not provided.")
        return DeviceCodeIdentity(config.delegated)
    else:
        raise AuthError(f"Unknown auth mode: {config.mode}")
