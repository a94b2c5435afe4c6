"""
Power BI Authentication
Azure AD token lifecycle using MSAL: interactive, device code and client credentials
"""
import asyncio
import logging
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

import msal

from powerbi_errors import AuthError

logger = logging.getLogger(__name__)

POWER_BI_SCOPE = ["https://analysis.windows.net/powerbi/api/.default"]
AUTHORITY = "https://login.microsoftonline.com/{tenant_id}"
# Public client id registered for Power BI tooling
DEFAULT_CLIENT_ID = "ea0616ba-638b-4df5-95b9-636659ae5121"
INTERACTIVE_REDIRECT_PORT = 3000
# Tokens closer than this to expiry are treated as absent
TOKEN_EXPIRY_BUFFER_SECONDS = 5 * 60


class AuthMethod(Enum):
    """Supported token acquisition methods"""
    INTERACTIVE = "interactive"
    DEVICE_CODE = "deviceCode"
    CLIENT_CREDENTIALS = "clientCredentials"

    @classmethod
    def parse(cls, value: Any) -> "AuthMethod":
        """Parse a method name, accepting camelCase, snake_case and singular spellings"""
        if isinstance(value, AuthMethod):
            return value
        normalized = str(value).replace('_', '').replace('-', '').lower()
        aliases = {
            'interactive': cls.INTERACTIVE,
            'devicecode': cls.DEVICE_CODE,
            'clientcredentials': cls.CLIENT_CREDENTIALS,
            'clientcredential': cls.CLIENT_CREDENTIALS,
        }
        if normalized not in aliases:
            raise ValueError(f"Unknown authentication method: {value}")
        return aliases[normalized]


REMEDIATION_HINTS = {
    AuthMethod.INTERACTIVE: "Sign in again in the browser window, or switch to deviceCode when no browser is available.",
    AuthMethod.DEVICE_CODE: "Open the verification URL and enter the code before it expires, then retry.",
    AuthMethod.CLIENT_CREDENTIALS: "Check tenantId, clientId and clientSecret of the service principal and that it has access to the workspace.",
}


@dataclass(frozen=True)
class AuthConfig:
    """Azure AD settings for one authentication epoch"""
    tenant_id: str = ""
    client_id: str = DEFAULT_CLIENT_ID
    method: AuthMethod = AuthMethod.INTERACTIVE
    client_secret: Optional[str] = field(default=None, repr=False)

    @property
    def authority(self) -> str:
        return AUTHORITY.format(tenant_id=self.tenant_id or "common")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthConfig":
        """
        Build from the persisted (camelCase) representation

        Raises:
            ValueError: if the method is unknown
        """
        return cls(
            tenant_id=str(data.get('tenantId') or ''),
            client_id=str(data.get('clientId') or DEFAULT_CLIENT_ID),
            method=AuthMethod.parse(data.get('method', AuthMethod.INTERACTIVE.value)),
            client_secret=data.get('clientSecret') or None,
        )

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        result = {
            'tenantId': self.tenant_id,
            'clientId': self.client_id,
            'method': self.method.value,
        }
        if include_secret:
            result['clientSecret'] = self.client_secret
        return result


@dataclass(frozen=True)
class CachedToken:
    """An access token together with its expiry and the epoch that minted it"""
    access_token: str = field(repr=False)
    expires_at: float
    epoch: Any = field(repr=False, compare=False)

    def is_usable(self, now: float) -> bool:
        return self.expires_at - now > TOKEN_EXPIRY_BUFFER_SECONDS


def default_app_factory(config: AuthConfig):
    """Create the MSAL application matching the configured method"""
    if config.method is AuthMethod.CLIENT_CREDENTIALS:
        return msal.ConfidentialClientApplication(
            config.client_id,
            authority=config.authority,
            client_credential=config.client_secret,
        )
    return msal.PublicClientApplication(config.client_id, authority=config.authority)


def print_device_code(verification_uri: str, user_code: str, message: Optional[str] = None):
    """Default device code sink: stderr, since stdout carries the MCP protocol"""
    sys.stderr.write(
        f"\n[Power BI MCP] To sign in, open {verification_uri} and enter the code: {user_code}\n\n"
    )
    sys.stderr.flush()


# ==================== ACQUISITION STRATEGIES ====================

class TokenStrategy:
    """Base class for one acquisition method. acquire() blocks and returns the MSAL result."""

    method: AuthMethod = AuthMethod.INTERACTIVE

    def __init__(self, config: AuthConfig, app_factory: Optional[Callable[[AuthConfig], Any]] = None):
        self.config = config
        self._app_factory = app_factory or default_app_factory
        self._app = None

    def _get_app(self):
        # Created lazily: MSAL resolves the authority over the network on construction
        if self._app is None:
            self._app = self._app_factory(self.config)
        return self._app

    def validate(self):
        """Raise AuthError for configurations that cannot possibly succeed"""

    def acquire(self) -> Dict[str, Any]:
        raise NotImplementedError

    def _error(self, message: str) -> AuthError:
        return AuthError(self.method.value, message, hint=REMEDIATION_HINTS[self.method])

    def _check_result(self, result: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if result and "access_token" in result:
            return result
        result = result or {}
        error = result.get("error_description") or result.get("error") or "no token returned"
        raise self._error(f"Authentication failed: {error}")


class InteractiveStrategy(TokenStrategy):
    """Silent reuse of the last signed-in account, falling back to the browser"""

    method = AuthMethod.INTERACTIVE

    def acquire(self) -> Dict[str, Any]:
        app = self._get_app()

        result = self._acquire_silent(app)
        if result is not None:
            return result

        logger.info("Starting interactive browser sign-in for Power BI")
        result = app.acquire_token_interactive(
            scopes=POWER_BI_SCOPE,
            prompt="select_account",
            port=INTERACTIVE_REDIRECT_PORT,
        )
        return self._check_result(result)

    def _acquire_silent(self, app) -> Optional[Dict[str, Any]]:
        # A silent failure is the trigger for the interactive flow, not an error
        try:
            accounts = app.get_accounts()
            if not accounts:
                return None
            result = app.acquire_token_silent(POWER_BI_SCOPE, account=accounts[0])
        except Exception as e:
            logger.debug(f"Silent token acquisition failed: {e}")
            return None

        if result and "access_token" in result:
            logger.debug("Reused cached account silently")
            return result
        logger.debug("Silent token acquisition returned no token")
        return None


class DeviceCodeStrategy(TokenStrategy):
    """Device code flow: the user completes sign-in on another device"""

    method = AuthMethod.DEVICE_CODE

    def __init__(
        self,
        config: AuthConfig,
        app_factory: Optional[Callable[[AuthConfig], Any]] = None,
        device_code_callback: Optional[Callable[..., None]] = None
    ):
        super().__init__(config, app_factory)
        self._device_code_callback = device_code_callback or print_device_code

    def acquire(self) -> Dict[str, Any]:
        app = self._get_app()

        flow = app.initiate_device_flow(scopes=POWER_BI_SCOPE)
        if "user_code" not in flow:
            error = flow.get("error_description") or flow.get("error") or "unknown error"
            raise self._error(f"Could not start device code flow: {error}")

        # Must reach the user before we block waiting for them
        self._device_code_callback(flow["verification_uri"], flow["user_code"], flow.get("message"))

        result = app.acquire_token_by_device_flow(flow)
        return self._check_result(result)


class ClientCredentialsStrategy(TokenStrategy):
    """Service principal authentication with a client secret"""

    method = AuthMethod.CLIENT_CREDENTIALS

    def validate(self):
        missing = []
        if not self.config.tenant_id:
            missing.append("tenantId")
        if not self.config.client_secret:
            missing.append("clientSecret")
        if missing:
            raise AuthError(
                self.method.value,
                f"Client credentials authentication requires {' and '.join(missing)}",
                hint="Set auth.tenantId and auth.clientSecret in the configuration, or switch to the interactive method.",
            )

    def acquire(self) -> Dict[str, Any]:
        self.validate()
        app = self._get_app()
        result = app.acquire_token_for_client(scopes=POWER_BI_SCOPE)
        return self._check_result(result)


STRATEGIES = {
    AuthMethod.INTERACTIVE: InteractiveStrategy,
    AuthMethod.DEVICE_CODE: DeviceCodeStrategy,
    AuthMethod.CLIENT_CREDENTIALS: ClientCredentialsStrategy,
}


@dataclass(frozen=True, eq=False)
class _AuthEpoch:
    config: AuthConfig
    strategy: TokenStrategy


# ==================== LIFECYCLE MANAGER ====================

class AuthManager:
    """
    Owns the credential cache and the active acquisition strategy

    Usage:
        auth = AuthManager(AuthConfig(method=AuthMethod.DEVICE_CODE))
        token = await auth.get_access_token()

        # Replacing the config drops the cached token
        auth.update_config(new_config)
    """

    def __init__(
        self,
        config: AuthConfig,
        app_factory: Optional[Callable[[AuthConfig], Any]] = None,
        device_code_callback: Optional[Callable[..., None]] = None,
        clock: Callable[[], float] = time.time
    ):
        self._app_factory = app_factory
        self._device_code_callback = device_code_callback
        self._clock = clock
        self._cached: Optional[CachedToken] = None
        self._epoch = self._build_epoch(config)
        logger.info(f"Auth manager initialized (method: {config.method.value})")

    def _build_epoch(self, config: AuthConfig) -> _AuthEpoch:
        strategy_cls = STRATEGIES[config.method]
        if strategy_cls is DeviceCodeStrategy:
            strategy = strategy_cls(config, self._app_factory, self._device_code_callback)
        else:
            strategy = strategy_cls(config, self._app_factory)
        return _AuthEpoch(config=config, strategy=strategy)

    @property
    def config(self) -> AuthConfig:
        return self._epoch.config

    def update_config(self, config: AuthConfig):
        """Swap in a new configuration. Any cached token is discarded, even if unexpired."""
        self._epoch = self._build_epoch(config)
        self._cached = None
        logger.info(f"Auth configuration updated (method: {config.method.value}) - token cache cleared")

    def clear_cache(self):
        self._cached = None

    def is_authenticated(self) -> bool:
        """True when get_access_token would answer from the cache"""
        cached = self._cached
        return (
            cached is not None
            and cached.epoch is self._epoch
            and cached.is_usable(self._clock())
        )

    async def get_access_token(self) -> str:
        """
        Return a bearer token for the Power BI API

        Raises:
            AuthError: when the configured method cannot produce a token
        """
        epoch = self._epoch
        cached = self._cached
        if cached is not None and cached.epoch is epoch and cached.is_usable(self._clock()):
            return cached.access_token

        epoch.strategy.validate()

        result = await asyncio.get_event_loop().run_in_executor(None, self._acquire, epoch)
        token = CachedToken(
            access_token=result["access_token"],
            expires_at=self._clock() + float(result.get("expires_in", 3600)),
            epoch=epoch,
        )

        # A token minted under a replaced config is returned to its caller but never cached
        if self._epoch is epoch:
            self._cached = token
        else:
            logger.info("Auth configuration changed during token acquisition - token not cached")

        logger.info(f"Acquired Power BI access token (method: {epoch.config.method.value})")
        return token.access_token

    @staticmethod
    def _acquire(epoch: _AuthEpoch) -> Dict[str, Any]:
        try:
            return epoch.strategy.acquire()
        except AuthError:
            raise
        except Exception as e:
            method = epoch.config.method
            raise AuthError(
                method.value,
                f"Token acquisition failed: {e}",
                hint=REMEDIATION_HINTS[method],
            ) from e
