"""
Power BI MCP Configuration
Parses the persisted settings file and keeps the running server in sync with it
"""
import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import yaml

from powerbi_auth import AuthConfig, AuthMethod, DEFAULT_CLIENT_ID
from powerbi_errors import ConfigError
from security.permissions import (
    ToolsState,
    apply_profile,
    compute_effective_state,
    get_permissions_summary,
    get_profile,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
_TRUE_VALUES = ('1', 'true', 'yes', 'on')


def env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class ConnectionConfig:
    """Where tools connect by default"""
    default_semantic_model_ids: Tuple[str, ...] = ()
    xmla_endpoint: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionConfig":
        ids = data.get('defaultSemanticModelIds') or ()
        if isinstance(ids, str):
            ids = [part.strip() for part in ids.split(',')]
        if not isinstance(ids, (list, tuple)) or not all(isinstance(i, str) for i in ids):
            raise ConfigError("connection.defaultSemanticModelIds must be a list of strings")
        endpoint = data.get('xmlaEndpoint') or ''
        if not isinstance(endpoint, str):
            raise ConfigError("connection.xmlaEndpoint must be a string")
        return cls(default_semantic_model_ids=tuple(i for i in ids if i), xmla_endpoint=endpoint.strip())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'defaultSemanticModelIds': list(self.default_semantic_model_ids),
            'xmlaEndpoint': self.xmla_endpoint,
        }


@dataclass(frozen=True)
class ServerConfig:
    """One immutable snapshot of the persisted settings"""
    tools: Mapping[str, bool] = field(default_factory=lambda: MappingProxyType({}))
    auth: AuthConfig = field(default_factory=AuthConfig)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    read_only: bool = False
    require_confirmation: bool = True
    profile: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'tools': dict(self.tools),
            'auth': self.auth.to_dict(),
            'connection': self.connection.to_dict(),
            'readOnly': self.read_only,
            'requireConfirmation': self.require_confirmation,
        }
        if self.profile:
            result['profile'] = self.profile
        return result


def env_auth_config() -> AuthConfig:
    """
    Auth settings from POWERBI_* environment variables

    Raises:
        ConfigError: if POWERBI_AUTH_METHOD names no known method
    """
    secret = os.getenv('POWERBI_CLIENT_SECRET')
    method = os.getenv('POWERBI_AUTH_METHOD') or AuthMethod.INTERACTIVE.value
    try:
        parsed_method = AuthMethod.parse(method)
    except ValueError as e:
        raise ConfigError(f"POWERBI_AUTH_METHOD: {e}", source='environment') from e
    return AuthConfig(
        tenant_id=os.getenv('POWERBI_TENANT_ID', ''),
        client_id=os.getenv('POWERBI_CLIENT_ID') or DEFAULT_CLIENT_ID,
        method=parsed_method,
        client_secret=secret or None,
    )


def env_profile() -> Optional[str]:
    """
    Permission profile from POWERBI_PERMISSION_PROFILE

    Raises:
        ConfigError: if the variable names no built-in profile
    """
    name = os.getenv('POWERBI_PERMISSION_PROFILE') or None
    if name is None:
        return None
    try:
        return get_profile(name).name
    except KeyError as e:
        raise ConfigError(f"POWERBI_PERMISSION_PROFILE: {e.args[0]}", source='environment') from e


def env_connection_config() -> ConnectionConfig:
    return ConnectionConfig(xmla_endpoint=os.getenv('POWERBI_XMLA_ENDPOINT', '').strip())


def default_server_config() -> ServerConfig:
    """
    Configuration used when no settings file exists

    Raises:
        ConfigError: if an environment variable holds an invalid value
    """
    return ServerConfig(
        auth=env_auth_config(),
        connection=env_connection_config(),
        read_only=env_flag('POWERBI_READ_ONLY'),
        profile=env_profile(),
    )


def _section(raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return value


def _flag(raw: Dict[str, Any], key: str, default: bool) -> bool:
    value = raw.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"'{key}' must be true or false")
    return value


def parse_server_config(raw: Any, source: Optional[str] = None) -> ServerConfig:
    """
    Validate a raw settings document

    Args:
        raw: Parsed YAML/JSON document (None for an empty file)
        source: Where the document came from, for error messages

    Returns:
        ServerConfig snapshot; sections missing from the document use the
        environment defaults

    Raises:
        ConfigError: if the document is malformed
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("Configuration must be a mapping", source=source)

    try:
        tools = _section(raw, 'tools')
        for tool_id, enabled in tools.items():
            if not isinstance(enabled, bool):
                raise ConfigError(f"tools.{tool_id} must be true or false")

        profile = raw['profile'] if 'profile' in raw else env_profile()
        if profile is not None:
            if not isinstance(profile, str):
                raise ConfigError("'profile' must be a string")
            try:
                profile = get_profile(profile).name
            except KeyError as e:
                raise ConfigError(e.args[0]) from e

        auth_raw = _section(raw, 'auth')
        if auth_raw:
            try:
                auth = AuthConfig.from_dict(auth_raw)
            except ValueError as e:
                raise ConfigError(f"auth: {e}") from e
        else:
            auth = env_auth_config()

        if auth.method is AuthMethod.CLIENT_CREDENTIALS and not (auth.tenant_id and auth.client_secret):
            # Accepted here; token acquisition reports it with a hint
            logger.warning("clientCredentials authentication configured without tenantId/clientSecret")

        connection_raw = _section(raw, 'connection')
        connection = ConnectionConfig.from_dict(connection_raw) if connection_raw else env_connection_config()

        return ServerConfig(
            tools=MappingProxyType({str(k): v for k, v in tools.items()}),
            auth=auth,
            connection=connection,
            read_only=_flag(raw, 'readOnly', env_flag('POWERBI_READ_ONLY')),
            require_confirmation=_flag(raw, 'requireConfirmation', True),
            profile=profile,
        )
    except ConfigError as e:
        if e.source is None:
            e.source = source
        raise


def load_server_config(path) -> ServerConfig:
    """
    Read and validate a settings file (YAML or JSON)

    Raises:
        ConfigError: if the file cannot be read or is malformed
    """
    path = Path(path)
    try:
        text = path.read_text(encoding='utf-8')
    except OSError as e:
        raise ConfigError(f"Cannot read configuration: {e}", source=str(path)) from e

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid configuration syntax: {e}", source=str(path)) from e

    return parse_server_config(raw, source=str(path))


# ==================== RECONCILER ====================

@dataclass(frozen=True)
class ReconciledState:
    """The last applied configuration and the tool state derived from it"""
    config: ServerConfig
    tools_state: ToolsState


class ConfigReconciler:
    """
    Watches the settings file and republishes permissions and auth on change

    Usage:
        reconciler = ConfigReconciler(path, registry, gate, auth=auth_manager)
        reconciler.load_initial()
        reconciler.start()        # poll task on the running loop
        ...
        await reconciler.stop()

    A malformed file is rejected and the last good snapshot stays active.
    """

    def __init__(
        self,
        path,
        registry,
        gate,
        auth=None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        audit=None
    ):
        self.path = Path(path) if path else None
        self.registry = registry
        self.gate = gate
        self.auth = auth
        self.poll_interval = poll_interval
        self.audit = audit

        self._state: Optional[ReconciledState] = None
        self._fingerprint: Optional[Tuple[int, int]] = None
        self._force_check = False
        self._listeners: List[Callable[[ReconciledState], None]] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def snapshot(self) -> Optional[ReconciledState]:
        return self._state

    @property
    def source(self) -> str:
        return str(self.path) if self.path else 'environment'

    def add_listener(self, listener: Callable[[ReconciledState], None]):
        """Called with every newly applied snapshot"""
        self._listeners.append(listener)

    def effective_tools(self, config: ServerConfig) -> ToolsState:
        """
        Tool state for a snapshot: profile or per-tool values, then the read-only override

        Raises:
            ConfigError: if the snapshot names an unknown profile
        """
        persisted: Mapping[str, bool] = config.tools
        if config.profile:
            try:
                profile = get_profile(config.profile)
            except KeyError as e:
                raise ConfigError(e.args[0]) from e
            if config.tools:
                logger.warning(f"Permission profile '{config.profile}' overrides the per-tool settings")
            persisted = apply_profile(profile, self.registry)
        return compute_effective_state(self.registry, persisted, config.read_only)

    def load_initial(self) -> ReconciledState:
        """
        Apply the settings file, or the environment defaults when there is none

        Nothing here raises: a file or environment that cannot be used is reported
        and the next fallback applies, down to the built-in defaults.
        """
        config = None
        if self.path is not None:
            try:
                self._fingerprint = self._stat()
            except OSError as e:
                self._fingerprint = None
                self._reject(ConfigError(f"Cannot read configuration: {e}", source=str(self.path)))
            else:
                if self._fingerprint is not None:
                    try:
                        config = load_server_config(self.path)
                    except ConfigError as e:
                        self._reject(e)
                else:
                    logger.info(f"No configuration file at {self.path}, using defaults")

        if config is not None:
            try:
                self._apply(config)
                return self._state
            except ConfigError as e:
                self._reject(e)

        try:
            self._apply(default_server_config())
        except ConfigError as e:
            self._reject(e)
            self._apply(ServerConfig())
        return self._state

    def check_once(self) -> bool:
        """
        Re-read the file if it changed since the last check

        Returns:
            True when a new snapshot was applied
        """
        if self.path is None:
            return False

        try:
            fingerprint = self._stat()
        except OSError as e:
            # Fingerprint untouched so the next check retries
            logger.warning(f"Cannot stat {self.path}, keeping the last applied settings: {e}")
            return False
        if fingerprint == self._fingerprint and not self._force_check:
            return False
        self._force_check = False
        self._fingerprint = fingerprint

        if fingerprint is None:
            logger.warning(f"Configuration file {self.path} disappeared, keeping the last applied settings")
            return False

        try:
            config = load_server_config(self.path)
        except ConfigError as e:
            self._reject(e)
            return False

        if self._state is not None and config == self._state.config:
            logger.debug("Configuration file touched without changes")
            return False

        try:
            self._apply(config)
        except ConfigError as e:
            self._reject(e)
            return False
        return True

    def notify_changed(self):
        """Force a re-read on the next check even if mtime and size look unchanged"""
        self._force_check = True

    async def run(self):
        """Poll loop; runs until cancelled"""
        logger.info(f"Watching {self.path} every {self.poll_interval}s")
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                self.check_once()
            except Exception as e:
                logger.error(f"Configuration check failed: {e}", exc_info=True)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self.run())
        return self._task

    async def stop(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ==================== INTERNALS ====================

    def _stat(self) -> Optional[Tuple[int, int]]:
        """(mtime, size) of the settings file, None when it does not exist; other OSErrors propagate"""
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def _reject(self, error: ConfigError):
        logger.error(f"Rejected configuration from {error.source or self.source}: {error.message}")
        if self.audit is not None:
            self.audit.log_config_rejected(error.source or self.source, error.message)

    def _apply(self, config: ServerConfig):
        tools_state = self.effective_tools(config)
        state = ReconciledState(config=config, tools_state=tools_state)

        # Permissions and auth switch together, with no suspension point in between
        self._state = state
        self.gate.publish(tools_state, config.read_only)
        auth_changed = self.auth is not None and self.auth.config != config.auth
        if auth_changed:
            self.auth.update_config(config.auth)

        summary = get_permissions_summary(self.registry, tools_state, config.read_only)
        logger.info(
            f"Configuration applied: {summary['enabled_count']}/{summary['total_count']} tools enabled, "
            f"read-only: {config.read_only}, auth: {config.auth.method.value}"
        )
        if summary['destructive_enabled']:
            logger.info(f"Destructive tools enabled: {', '.join(summary['destructive_enabled'])}")
        if self.audit is not None:
            self.audit.log_config_reload(self.source, summary, auth_changed)

        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Configuration listener failed: {e}")
