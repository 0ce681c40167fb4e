"""
ID token verification for federated (Google / Microsoft) login.

The client posts the OpenID Connect ``id_token`` it received from the
provider. Nothing in the request body is trusted beyond that token:

  1. the header must name RS256 and a ``kid``
  2. the signing key is fetched from the provider's JWKS (``PyJWKClient``,
     cached per provider)
  3. signature, ``exp``, ``iat``, audience (our client id) and issuer are
     verified by PyJWT
  4. ``sub`` and the email claim are read from the verified payload

A provider whose client id is not configured is disabled.
"""

import logging
from dataclasses import dataclass

import jwt
from flask import current_app

from autotrack.core.exceptions import AuthenticationError, ValidationError

logger = logging.getLogger(__name__)

ALGORITHMS = ["RS256"]
CLOCK_SKEW_SECONDS = 60


@dataclass(frozen=True)
class IdentityProvider:
    name: str
    uid_column: str
    jwks_uri: str
    client_id_setting: str
    issuers: tuple[str, ...] = ()
    # Microsoft issuers embed the tenant id: https://login.microsoftonline.com/{tid}/v2.0
    issuer_template: str | None = None


PROVIDERS = {
    "google": IdentityProvider(
        name="google",
        uid_column="google_uid",
        jwks_uri="https://www.googleapis.com/oauth2/v3/certs",
        client_id_setting="GOOGLE_CLIENT_ID",
        issuers=("https://accounts.google.com", "accounts.google.com"),
    ),
    "microsoft": IdentityProvider(
        name="microsoft",
        uid_column="microsoft_uid",
        jwks_uri="https://login.microsoftonline.com/common/discovery/v2.0/keys",
        client_id_setting="MICROSOFT_CLIENT_ID",
        issuer_template="https://login.microsoftonline.com/{tid}/v2.0",
    ),
}


@dataclass(frozen=True)
class VerifiedIdentity:
    provider: IdentityProvider
    subject: str
    email: str


_jwk_clients: dict[str, jwt.PyJWKClient] = {}


def get_provider(name: str | None) -> IdentityProvider:
    provider = PROVIDERS.get((name or "").lower())
    if provider is None:
        raise ValidationError(
            f"provider must be one of: {', '.join(sorted(PROVIDERS))}", details={"provider": name},
        )
    return provider


def signing_key(provider: IdentityProvider, token: str):
    """Public key from the provider's JWKS matching the token's ``kid``."""
    client = _jwk_clients.get(provider.name)
    if client is None:
        client = _jwk_clients[provider.name] = jwt.PyJWKClient(provider.jwks_uri, cache_keys=True)
    return client.get_signing_key_from_jwt(token).key


def _allowed_issuers(provider: IdentityProvider, token: str) -> list[str]:
    if provider.issuer_template is None:
        return list(provider.issuers)
    tenant = current_app.config.get("MICROSOFT_TENANT_ID")
    if not tenant or tenant in ("common", "organizations"):
        # Multi-tenant app: the tenant comes from the token, the signature still has to hold
        tenant = jwt.decode(token, options={"verify_signature": False}).get("tid")
    if not tenant:
        raise jwt.InvalidIssuerError("Token has no tenant id")
    return [provider.issuer_template.format(tid=tenant)]


def verify_id_token(provider_name: str | None, token: str | None) -> VerifiedIdentity:
    """Verify *token* for *provider_name* and return its subject and email.

    Raises ``ValidationError`` for a missing token or unknown provider and
    ``AuthenticationError`` for anything that fails verification.
    """
    provider = get_provider(provider_name)
    client_id = current_app.config.get(provider.client_id_setting)
    if not client_id:
        raise AuthenticationError(f"{provider.name.capitalize()} sign-in is not configured.")
    if not token or not isinstance(token, str):
        raise ValidationError("id_token is required", details={"id_token": "required"})

    try:
        header = jwt.get_unverified_header(token)
        if header.get("alg") not in ALGORITHMS or not header.get("kid"):
            raise jwt.InvalidAlgorithmError(f"Unsupported token header: alg={header.get('alg')}")
        claims = jwt.decode(
            token,
            signing_key(provider, token),
            algorithms=ALGORITHMS,
            audience=client_id,
            issuer=_allowed_issuers(provider, token),
            leeway=CLOCK_SKEW_SECONDS,
            options={"require": ["sub", "exp", "iat", "aud", "iss"]},
        )
    except jwt.PyJWTError as exc:  # includes JWKS fetch failures
        logger.warning("Rejected %s id_token: %s", provider.name, exc)
        raise AuthenticationError(f"Invalid {provider.name.capitalize()} sign-in token.") from None

    email = claims.get("email") or claims.get("preferred_username")
    if not email:
        raise AuthenticationError("The sign-in token carries no email address.")
    if claims.get("email_verified") is False:
        raise AuthenticationError("The email address on this account is not verified.")
    return VerifiedIdentity(provider=provider, subject=str(claims["sub"]), email=email)
