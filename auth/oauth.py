"""
auth/oauth.py -- Authlib OAuth provider registry, state nonces and identity mapping.

The provider handshake (authorization redirect, code exchange, token
parsing) is authlib's job. This module only:
  - registers the providers whose credentials are configured,
  - issues and consumes OAuth state nonces (OAuthStateStore),
  - turns the provider's final identity into (email, subject), and
  - maps that identity onto a local User (resolve_oauth_user).

State nonces: single use, at most oauth_state_ttl_seconds (10 min) old, kept
in the TTL cache and swept by the cache purge loop. The callback consumes the
nonce before authlib touches the request, so a replayed or forged callback
is rejected even if the Starlette session still holds a state value.

Security notes:
  Email verification is mandatory. get_oauth_user_info() raises
  ValueError if the provider does not confirm the email is verified.

Layer rule: no imports from api/. Import from core/ and cache/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable

from authlib.integrations.starlette_client import OAuth
from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.rbac import USER
from auth.store import UserStore
from cache.store import TTLStore
from core.config import get_settings

logger = logging.getLogger("movex.auth.oauth")

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

# GitHub -- static endpoints (no OIDC discovery document)
if _cfg.github_client_id and _cfg.github_client_secret:
    oauth.register(
        name="github",
        client_id=_cfg.github_client_id,
        client_secret=_cfg.github_client_secret,
        access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
        authorize_url="https://github.com/login/oauth/authorize",
        api_base_url="https://api.github.com/",
        client_kwargs={"scope": "read:user user:email"},
    )
    logger.info("GitHub OAuth provider registered")

# Google -- OIDC discovery
if _cfg.google_client_id and _cfg.google_client_secret:
    oauth.register(
        name="google",
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile", "prompt": "select_account"},
    )
    logger.info("Google OAuth provider registered")

SUPPORTED_PROVIDERS = ("github", "google")


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every provider with credentials configured."""
    cfg = get_settings()
    providers: list[dict] = []
    if cfg.github_client_id and cfg.github_client_secret:
        providers.append({"name": "github", "label": "GitHub"})
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    return providers


# ---------------------------------------------------------------------------
# State nonces
# ---------------------------------------------------------------------------


class OAuthStateStore:
    """Single-use OAuth state values with a maximum age."""

    _PREFIX = "oauth_state:"

    def __init__(self, cache: TTLStore, *, ttl: float = 600, clock: Callable[[], float] = time.time) -> None:
        self._cache = cache
        self.ttl = ttl
        self._clock = clock

    def issue(self) -> str:
        state = secrets.token_hex(32)
        self._cache.set(self._PREFIX + state, {"created_at": self._clock()}, ttl=self.ttl)
        return state

    def consume(self, state: str | None) -> bool:
        """True once for a state issued no more than ttl seconds ago."""
        if not state:
            return False
        entry = self._cache.pop(self._PREFIX + state)
        if entry is None:
            return False
        return self._clock() - entry["created_at"] <= self.ttl


# ---------------------------------------------------------------------------
# Email / subject extraction -- provider-specific normalization
# ---------------------------------------------------------------------------


async def get_oauth_user_info(client, provider: str, token: dict) -> tuple[str, str]:
    """Extract (email, subject_id) from a provider token response.

    Raises:
        ValueError: If a verified email cannot be confirmed.
    """
    if provider == "github":
        return await _get_github_user_info(client, token)
    elif provider == "google":
        return _get_oidc_user_info(token, provider)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_user_info(client, token: dict) -> tuple[str, str]:
    """GitHub needs two calls: /user for the numeric ID, /user/emails for the
    primary verified address. Only an entry with primary=true AND
    verified=true is accepted.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    subject_id = str(resp.json()["id"])

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            return entry["email"], subject_id

    raise ValueError(
        "GitHub OAuth: no primary verified email found. "
        "The user must verify their email address on GitHub before logging in."
    )


def _get_oidc_user_info(token: dict, provider: str) -> tuple[str, str]:
    """Google returns an id_token whose userinfo claims carry email,
    email_verified and sub. A missing email_verified counts as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(f"{provider} OAuth: email is not verified.")

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    return email, subject_id


# ---------------------------------------------------------------------------
# Local account mapping
# ---------------------------------------------------------------------------


def resolve_oauth_user(store: UserStore, provider: str, subject: str, email: str) -> User:
    """Map a verified provider identity to a local account.

    Order: existing link (provider, subject) -> account whose username or
    e-mail equals the verified address (linked on first use) -> new account
    with role "user" and no local password.

    Raises:
        ValueError: account disabled, or the matching account is already
            linked to a different identity.
    """
    user = store.get_by_oauth(provider, subject)
    if user is None:
        user = store.get_by_username(email) or store.get_by_email(email)
        if user is not None:
            if user.oauth_subject and (user.oauth_provider, user.oauth_subject) != (provider, subject):
                raise ValueError(f"Account {user.id} is linked to another {user.oauth_provider} identity")
            store.link_oauth(user.id, provider, subject)
        else:
            try:
                uid = store.create_user(
                    User(username=email, email=email, role=USER, oauth_provider=provider, oauth_subject=subject)
                )
            except IntegrityError:
                # Concurrent first login created the row; use it.
                uid = store.get_by_username(email).id
            user = store.get_by_id(uid)
            logger.info("Created OAuth account user_id=%s via %s", uid, provider)

    if user is None or not user.is_active:
        raise ValueError("Account is disabled")
    return user
