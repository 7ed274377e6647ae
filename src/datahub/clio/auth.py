"""
Clio OAuth access tokens, cached per principal.

Clio issues short-lived access tokens from a refresh-token grant:

    POST {clio_token_url}
        grant_type=refresh_token&client_id=..&client_secret=..&refresh_token=..
    -> {"access_token": "...", "expires_in": 3600, "refresh_token": "..."}

Clio may invalidate the previous refresh token on every grant, so two
concurrent grants for one principal can lock that principal out. TokenCache
therefore runs at most one exchange per principal at a time: callers take a
per-principal asyncio.Lock and re-check the cache once they hold it, so
everyone who queued behind an exchange shares its result. Different
principals never wait on each other.

Cache entries expire at least 60 seconds before Clio says they do, to absorb
clock skew and in-flight request latency.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import httpx

from datahub.clio.secrets import SecretResolver, credential_names
from datahub.errors import MissingCredentials, TokenExchangeFailed

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

MIN_EXPIRY_BUFFER_SECONDS = 60
DEFAULT_EXPIRES_IN = 3600
TOKEN_TIMEOUT_SECONDS = 10.0


# ── Cache entries ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CachedToken:
    principal: str
    access_token: str
    expires_at: float  # epoch seconds, already reduced by the buffer


class InMemoryTokenStore:
    """Principal-keyed token store. Swap for a shared cache when scaling out."""

    def __init__(self):
        self._entries: Dict[str, CachedToken] = {}

    def get(self, principal: str) -> Optional[CachedToken]:
        return self._entries.get(principal)

    def set(self, token: CachedToken) -> None:
        self._entries[token.principal] = token

    def evict(self, principal: str) -> Optional[CachedToken]:
        return self._entries.pop(principal, None)


# ── Main class ────────────────────────────────────────────────────────────────

class TokenCache:
    """
    Hands out Clio access tokens per principal.

    Usage:
        tokens = TokenCache(http, secrets, token_url=settings.clio_token_url)
        token = await tokens.get_token("pbi")
        token = await tokens.get_token("pbi", force_refresh=True)  # after a 401
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        secrets: SecretResolver,
        *,
        token_url: str,
        service_principal: str = "pbi",
        store: Optional[InMemoryTokenStore] = None,
        expiry_buffer_seconds: int = MIN_EXPIRY_BUFFER_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._http = http
        self._secrets = secrets
        self._token_url = token_url
        self._service_principal = service_principal.lower()
        self._store = store or InMemoryTokenStore()
        self._buffer = max(expiry_buffer_seconds, MIN_EXPIRY_BUFFER_SECONDS)
        self._clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def service_principal(self) -> str:
        return self._service_principal

    def _fresh(self, principal: str) -> Optional[CachedToken]:
        cached = self._store.get(principal)
        if cached is not None and cached.expires_at > self._clock():
            return cached
        return None

    def invalidate(self, principal: str) -> None:
        self._store.evict(principal.lower())

    async def get_token(self, principal: Optional[str] = None, force_refresh: bool = False) -> str:
        """
        Return a valid access token for `principal` (default: service principal).

        Args:
            principal: Initials or service principal name (case-insensitive).
            force_refresh: Evict the cached token and exchange again. Used after
                Clio answered 401 to the cached token.

        Raises:
            TokenExchangeFailed: the grant failed; the message carries Clio's body.
            MissingCredentials: no credentials for the service principal.
        """
        key = (principal or self._service_principal).lower()

        rejected = None
        if force_refresh:
            # Evict first: a failed retry must not resurrect a rejected token
            rejected = self._store.evict(key)
        else:
            cached = self._fresh(key)
            if cached is not None:
                return cached.access_token

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Someone may have refreshed while we queued for the lock
            cached = self._fresh(key)
            if cached is not None and (
                rejected is None or cached.access_token != rejected.access_token
            ):
                return cached.access_token

            try:
                token = await self._exchange(key)
            except MissingCredentials:
                if key == self._service_principal:
                    raise
                logger.warning(
                    "No Clio credentials for '%s', falling back to service principal '%s'",
                    key, self._service_principal,
                )
                return await self.get_token(self._service_principal)

            self._store.set(token)
            return token.access_token

    async def _exchange(self, principal: str) -> CachedToken:
        names = credential_names(principal)
        creds = {field: self._secrets.get_secret(name) for field, name in names.items()}
        if not all(creds.values()):
            missing = ", ".join(names[f] for f, v in creds.items() if not v)
            raise MissingCredentials(f"Missing Clio credentials for '{principal}': {missing}")

        logger.info("Refreshing Clio access token for '%s'", principal)
        try:
            resp = await self._http.post(
                self._token_url,
                data={
                    "grant_type": "refresh_token",
                    "client_id": creds["client_id"],
                    "client_secret": creds["client_secret"],
                    "refresh_token": creds["refresh_token"],
                },
                timeout=TOKEN_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as exc:
            raise TokenExchangeFailed(f"Clio token request failed: {exc}") from exc

        if resp.status_code != 200:
            raise TokenExchangeFailed(
                f"Clio OAuth failed: {resp.status_code} {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise TokenExchangeFailed(
                "Clio OAuth returned a non-JSON body", status_code=resp.status_code, body=resp.text
            ) from exc
        access_token = data.get("access_token")
        if not access_token:
            raise TokenExchangeFailed(
                "No access token returned from Clio", status_code=resp.status_code, body=resp.text
            )

        rotated = data.get("refresh_token")
        if rotated and rotated != creds["refresh_token"]:
            self._store_refresh_token(names["refresh_token"], rotated)

        expires_in = int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
        return CachedToken(
            principal=principal,
            access_token=access_token,
            expires_at=self._clock() + expires_in - self._buffer,
        )

    def _store_refresh_token(self, name: str, value: str) -> None:
        setter = getattr(self._secrets, "set_secret", None)
        try:
            if setter is None:
                raise TypeError("read-only secret resolver")
            setter(name, value)
        except TypeError:
            logger.warning("Clio rotated %s but the secret store is read-only", name)
            return
        logger.info("Stored rotated Clio refresh token %s", name)
