"""
Bureau Monitor - Bureau Adapters

One adapter per provider. Each live adapter:
1. Obtains a bearer token (OAuth2 client credentials), cached process-wide
2. Shapes the subject identity into the provider's request payload
3. Returns the verbatim provider JSON

When a provider has no client id/secret configured, build_adapter() returns
the sandbox adapter instead and says so at WARNING level.
"""
from __future__ import annotations
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import httpx

from ...models.ssot import Bureau, PermissiblePurpose, SubjectIdentity
from .errors import AuthenticationError, UpstreamError

logger = logging.getLogger(__name__)

# Per-request provider timeout in seconds
BUREAU_HTTP_TIMEOUT_SECONDS = float(os.getenv("BUREAU_HTTP_TIMEOUT_SECONDS", "30"))

# Tokens are refreshed when within this many seconds of expiry
TOKEN_REFRESH_MARGIN_SECONDS = 60
DEFAULT_TOKEN_TTL_SECONDS = 3600


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class BureauConfig:
    bureau: Bureau
    name: str
    base_url: str
    auth_path: str
    report_path: str
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    subscriber_code: Optional[str] = None
    product_code: Optional[str] = None
    member_number: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret)


def load_bureau_config(env: Optional[Mapping[str, str]] = None) -> Dict[Bureau, BureauConfig]:
    """Read provider endpoints and credentials from the environment."""
    env = os.environ if env is None else env
    return {
        Bureau.EXPERIAN: BureauConfig(
            bureau=Bureau.EXPERIAN,
            name="Experian",
            base_url=env.get("EXPERIAN_API_URL", "https://sandbox-us-api.experian.com"),
            auth_path="/consumerservices/v2/oauth2/token",
            report_path="/consumerservices/v2/credit-report",
            client_id=env.get("EXPERIAN_CLIENT_ID"),
            client_secret=env.get("EXPERIAN_CLIENT_SECRET"),
            subscriber_code=env.get("EXPERIAN_SUBSCRIBER_CODE"),
            product_code=env.get("EXPERIAN_PRODUCT_CODE", "creditProfile"),
        ),
        Bureau.EQUIFAX: BureauConfig(
            bureau=Bureau.EQUIFAX,
            name="Equifax",
            base_url=env.get("EQUIFAX_API_URL", "https://api.sandbox.equifax.com"),
            auth_path="/v2/oauth/token",
            report_path="/business/consumer-credit/v1/reports/credit-report",
            client_id=env.get("EQUIFAX_CLIENT_ID"),
            client_secret=env.get("EQUIFAX_CLIENT_SECRET"),
            member_number=env.get("EQUIFAX_MEMBER_NUMBER"),
        ),
        Bureau.TRANSUNION: BureauConfig(
            bureau=Bureau.TRANSUNION,
            name="TransUnion",
            base_url=env.get("TRANSUNION_API_URL", "https://netaccess-test.transunion.com"),
            auth_path="/api/v1/token",
            report_path="/api/v1/credit-report",
            client_id=env.get("TRANSUNION_CLIENT_ID"),
            client_secret=env.get("TRANSUNION_CLIENT_SECRET"),
            subscriber_code=env.get("TRANSUNION_SUBSCRIBER_CODE"),
        ),
    }


# =============================================================================
# TOKEN CACHE
# =============================================================================

@dataclass
class CachedToken:
    token: str
    expires_at: float


class TokenCache:
    """
    Bearer tokens keyed by provider.

    Reads are lock-free; a refresh happens under a per-provider lock so that
    concurrent callers holding an expired token trigger one re-authentication.
    """

    def __init__(self, clock: Callable[[], float] = time.time,
                 refresh_margin: float = TOKEN_REFRESH_MARGIN_SECONDS):
        self._clock = clock
        self._refresh_margin = refresh_margin
        self._tokens: Dict[str, CachedToken] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, provider: str) -> threading.Lock:
        with self._locks_guard:
            if provider not in self._locks:
                self._locks[provider] = threading.Lock()
            return self._locks[provider]

    def _fresh(self, cached: Optional[CachedToken]) -> bool:
        return cached is not None and cached.expires_at > self._clock() + self._refresh_margin

    def get(self, provider: str, fetch: Callable[[], Tuple[str, float]]) -> str:
        """Return a valid token, calling fetch() -> (token, expires_in) when needed."""
        cached = self._tokens.get(provider)
        if self._fresh(cached):
            return cached.token

        with self._lock_for(provider):
            # Another caller may have refreshed while we waited
            cached = self._tokens.get(provider)
            if self._fresh(cached):
                return cached.token
            token, expires_in = fetch()
            self._tokens[provider] = CachedToken(token=token, expires_at=self._clock() + expires_in)
            logger.info(f"Bureau access token obtained for {provider}")
            return token

    def invalidate(self, provider: str) -> None:
        self._tokens.pop(provider, None)

    def clear(self) -> None:
        self._tokens.clear()


_shared_token_cache = TokenCache()


def shared_token_cache() -> TokenCache:
    """The process-wide token cache used by every live adapter."""
    return _shared_token_cache


# =============================================================================
# ADAPTERS
# =============================================================================

class BureauAdapter(ABC):
    """pull(identity, permissible_purpose) -> raw provider JSON."""

    bureau: Bureau

    @property
    @abstractmethod
    def is_live(self) -> bool:
        ...

    @abstractmethod
    def pull(
        self,
        identity: SubjectIdentity,
        permissible_purpose: PermissiblePurpose = PermissiblePurpose.WRITTEN_INSTRUCTION,
    ) -> Dict[str, Any]:
        ...


class LiveBureauAdapter(BureauAdapter):
    """Shared OAuth + HTTP plumbing; subclasses only shape the payload."""

    def __init__(
        self,
        config: BureauConfig,
        token_cache: Optional[TokenCache] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = BUREAU_HTTP_TIMEOUT_SECONDS,
    ):
        self.config = config
        self.bureau = config.bureau
        self.token_cache = token_cache or shared_token_cache()
        self._client = client
        self._timeout = timeout

    @property
    def is_live(self) -> bool:
        return True

    @abstractmethod
    def build_payload(self, identity: SubjectIdentity, permissible_purpose: PermissiblePurpose) -> Dict[str, Any]:
        ...

    def pull(
        self,
        identity: SubjectIdentity,
        permissible_purpose: PermissiblePurpose = PermissiblePurpose.WRITTEN_INSTRUCTION,
    ) -> Dict[str, Any]:
        if not self.config.has_credentials:
            raise AuthenticationError(f"{self.config.name} credentials are not configured", bureau=self.bureau.value)

        payload = self.build_payload(identity, PermissiblePurpose(permissible_purpose))
        token = self.token_cache.get(self.bureau.value, self._fetch_token)
        response = self._post(
            self.config.report_path,
            json=payload,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
        )

        if response.status_code in (401, 403):
            self.token_cache.invalidate(self.bureau.value)
            raise AuthenticationError(
                f"{self.config.name} rejected the access token ({response.status_code})", bureau=self.bureau.value
            )
        if not response.is_success:
            raise UpstreamError(
                f"{self.config.name} report pull failed ({response.status_code}): {response.text[:200]}",
                bureau=self.bureau.value,
                status_code=response.status_code,
            )

        data = self._json(response)
        if not isinstance(data, dict):
            raise UpstreamError(f"{self.config.name} returned a non-object report body", bureau=self.bureau.value)
        logger.info(f"Pulled live {self.bureau.value} report for subject {identity.subject_id}")
        return data

    # -------------------------------------------------------------------------
    # HTTP helpers
    # -------------------------------------------------------------------------

    def _fetch_token(self) -> Tuple[str, float]:
        response = self._post(
            self.config.auth_path,
            data={"grant_type": "client_credentials"},
            auth=(self.config.client_id, self.config.client_secret),
        )
        if response.status_code >= 500:
            raise UpstreamError(
                f"{self.config.name} auth endpoint failed ({response.status_code})",
                bureau=self.bureau.value,
                status_code=response.status_code,
            )
        if not response.is_success:
            raise AuthenticationError(
                f"{self.config.name} auth failed ({response.status_code}): {response.text[:200]}",
                bureau=self.bureau.value,
            )

        data = self._json(response)
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise AuthenticationError(f"{self.config.name} auth response has no access_token", bureau=self.bureau.value)
        expires_in = data.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS
        return token, float(expires_in)

    def _post(self, path: str, **kwargs) -> httpx.Response:
        url = f"{self.config.base_url.rstrip('/')}{path}"
        try:
            if self._client is not None:
                return self._client.post(url, **kwargs)
            with httpx.Client(timeout=httpx.Timeout(self._timeout)) as client:
                return client.post(url, **kwargs)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"{self.config.name} request timed out: {e}", bureau=self.bureau.value) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"{self.config.name} request failed: {e}", bureau=self.bureau.value) from e

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(
                f"{self.config.name} returned a non-JSON response", bureau=self.bureau.value,
                status_code=response.status_code,
            ) from e


def _dob(identity: SubjectIdentity) -> str:
    return identity.date_of_birth.isoformat() if identity.date_of_birth else ""


class ExperianAdapter(LiveBureauAdapter):

    def build_payload(self, identity: SubjectIdentity, permissible_purpose: PermissiblePurpose) -> Dict[str, Any]:
        address = identity.address
        return {
            "consumerPii": {
                "primaryApplicant": {
                    "name": {"firstName": identity.first_name, "lastName": identity.last_name},
                    "ssn": {"ssn": identity.masked_national_id},
                    "dob": {"dob": _dob(identity)},
                    "currentAddress": {
                        "line1": address.line1,
                        "line2": address.line2 or "",
                        "city": address.city,
                        "state": address.state,
                        "zipCode": address.zip_code,
                    },
                },
            },
            "requestor": {"subscriberCode": self.config.subscriber_code},
            "permissiblePurpose": {"type": permissible_purpose.value},
            "addOns": {"directCheck": "", "demographics": "allReturnableDemo"},
            "productCode": self.config.product_code,
        }


class EquifaxAdapter(LiveBureauAdapter):

    def build_payload(self, identity: SubjectIdentity, permissible_purpose: PermissiblePurpose) -> Dict[str, Any]:
        address = identity.address
        return {
            "consumers": {
                "name": [{"firstName": identity.first_name, "lastName": identity.last_name, "suffix": ""}],
                "socialNum": [{"socialNum": identity.masked_national_id}],
                "dateOfBirth": _dob(identity),
                "addresses": [{
                    "line1": address.line1,
                    "line2": address.line2 or "",
                    "city": address.city,
                    "state": address.state,
                    "zipCode": address.zip_code,
                }],
            },
            "customerConfiguration": {
                "equifaxUSConsumerCreditReport": {
                    "memberNumber": self.config.member_number,
                    "customerCode": "",
                    "permissiblePurposeCode": permissible_purpose.value,
                    "outputFormat": "json",
                    "models": [{"modelId": "FICO9"}],
                },
            },
        }


class TransUnionAdapter(LiveBureauAdapter):

    def build_payload(self, identity: SubjectIdentity, permissible_purpose: PermissiblePurpose) -> Dict[str, Any]:
        address = identity.address
        return {
            "subscriber": {"subscriberCode": self.config.subscriber_code},
            "subject": {
                "name": {"firstName": identity.first_name, "lastName": identity.last_name},
                "socialSecurity": identity.masked_national_id,
                "dateOfBirth": _dob(identity),
                "addresses": [{
                    "street": address.line1,
                    "city": address.city,
                    "state": address.state,
                    "zip": address.zip_code,
                }],
            },
            "product": {"code": "creditReport", "options": {"scoreModel": "vantageScore3"}},
            "permissiblePurpose": {"code": permissible_purpose.value},
        }


LIVE_ADAPTERS = {
    Bureau.EXPERIAN: ExperianAdapter,
    Bureau.EQUIFAX: EquifaxAdapter,
    Bureau.TRANSUNION: TransUnionAdapter,
}


# =============================================================================
# AVAILABILITY AND FACTORY
# =============================================================================

@dataclass
class BureauAvailability:
    bureau: Bureau
    name: str
    configured: bool
    mode: str  # live / sandbox
    base_url: str

    @property
    def is_live(self) -> bool:
        return self.mode == "live"


def bureau_availability(configs: Optional[Dict[Bureau, BureauConfig]] = None) -> List[BureauAvailability]:
    """Which bureaus have live credentials and which run in sandbox mode."""
    configs = configs or load_bureau_config()
    return [
        BureauAvailability(
            bureau=bureau,
            name=config.name,
            configured=config.has_credentials,
            mode="live" if config.has_credentials else "sandbox",
            base_url=config.base_url,
        )
        for bureau, config in configs.items()
    ]


def build_adapter(
    bureau: Bureau,
    config: Optional[BureauConfig] = None,
    token_cache: Optional[TokenCache] = None,
    client: Optional[httpx.Client] = None,
) -> BureauAdapter:
    """Live adapter when credentials exist, sandbox adapter otherwise."""
    from .sandbox import SandboxAdapter

    bureau = Bureau(bureau)
    config = config or load_bureau_config()[bureau]
    if not config.has_credentials:
        logger.warning(
            f"{config.name} API credentials not configured; {bureau.value} pulls will use sandbox mode"
        )
        return SandboxAdapter(bureau)
    return LIVE_ADAPTERS[bureau](config, token_cache=token_cache, client=client)


def build_adapters(configs: Optional[Dict[Bureau, BureauConfig]] = None) -> Dict[Bureau, BureauAdapter]:
    configs = configs or load_bureau_config()
    return {bureau: build_adapter(bureau, config) for bureau, config in configs.items()}
